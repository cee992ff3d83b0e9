"""Brevo (Sendinblue) transactional email client for chase emails.

This module provides a client for sending plain-text transactional emails via
the Brevo API. Without an API key every send is a dry run.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID, uuid5

import httpx

from backend.core.config import settings

# DNS namespace UUID for deterministic UUID5 generation
DNS_NAMESPACE = UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c8")


def generate_message_id(reference: str | None = None, ts: datetime | None = None) -> str:
    """Generate deterministic message ID using UUID5.

    Args:
        reference: Invoice reference (optional)
        ts: Timestamp (optional, defaults to now)

    Returns:
        Deterministic message ID (UUID string)
    """
    if ts is None:
        ts = datetime.now(UTC)
    parts = [settings.COMPANY_EMAIL]
    if reference:
        parts.append(reference)
    parts.append(ts.isoformat())
    return str(uuid5(DNS_NAMESPACE, "|".join(parts)))


@dataclass
class BrevoResponse:
    """Response from Brevo API."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    dry_run: bool = False


def _preview(subject: str) -> str:
    return subject[:50] + "..." if len(subject) > 50 else subject


class BrevoClient:
    """Brevo API client for transactional emails."""

    def __init__(
        self,
        api_key: str | None = None,
        sender_email: str | None = None,
        sender_name: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize Brevo client, falling back to application settings."""
        self.logger = logging.getLogger(__name__)

        self.api_key = api_key if api_key is not None else settings.BREVO_API_KEY
        self.sender_email = sender_email or settings.COMPANY_EMAIL
        self.sender_name = sender_name or settings.COMPANY_NAME
        self.base_url = base_url or settings.BREVO_BASE_URL

        if not self.api_key:
            self.logger.warning("BREVO_API_KEY not set - only dry-run mode available")

        self._client = httpx.Client(
            base_url=self.base_url,
            headers={
                "api-key": self.api_key or "dry-run",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout or settings.MAIL_TIMEOUT_S,
        )

    def send_transactional(
        self,
        to: str,
        subject: str,
        text: str,
        reference: str | None = None,
        dry_run: bool = False,
    ) -> BrevoResponse:
        """Send a plain-text transactional email via Brevo API.

        Args:
            to: Recipient email address
            subject: Email subject
            text: Plain-text content, signature included
            reference: Invoice reference for the deterministic message ID
            dry_run: If True, simulate sending without actual API call

        Returns:
            BrevoResponse with success status and details
        """
        if dry_run or not self.api_key:
            return self._handle_dry_run(to, subject, reference)

        message_id = generate_message_id(reference=reference)
        email_data = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": to}],
            "subject": subject,
            "textContent": text,
            "headers": {"X-Message-ID": message_id, "X-Chase-Reference": reference or ""},
        }

        try:
            response = self._client.post("/smtp/email", json=email_data)
        except httpx.RequestError as e:
            error_msg = f"Network error sending email: {e}"
            self.logger.error(error_msg, extra={"to": to, "error": str(e)})
            return BrevoResponse(success=False, error=error_msg)

        if response.status_code in (200, 201, 202):
            provider_id = response.json().get("messageId") or message_id
            self.logger.info(
                "Email sent successfully via Brevo",
                extra={"to": to, "message_id": provider_id, "subject": _preview(subject)},
            )
            return BrevoResponse(success=True, message_id=provider_id)

        error_msg = f"Brevo API error: {response.status_code} - {response.text}"
        self.logger.error(
            "Failed to send email via Brevo",
            extra={"to": to, "status_code": response.status_code},
        )
        return BrevoResponse(success=False, error=error_msg)

    def _handle_dry_run(self, to: str, subject: str, reference: str | None) -> BrevoResponse:
        self.logger.info(
            "DRY-RUN: Would send email via Brevo",
            extra={"to": to, "subject": _preview(subject), "dry_run": True},
        )
        return BrevoResponse(
            success=True, message_id=generate_message_id(reference=reference), dry_run=True
        )

    def close(self):
        """Close HTTP client connection."""
        if hasattr(self, "_client"):
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
