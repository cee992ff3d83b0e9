"""Chase email delivery: signature, test-mode routing and the mail provider."""

from __future__ import annotations

import logging
from typing import Protocol

from backend.core.config import Settings, settings as default_settings
from backend.integrations.brevo_client import BrevoClient

from .dto import DeliveryReceipt
from .errors import DeliveryError


class DeliverySender(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt: ...


def signature_block(signature_name: str, company_name: str) -> str:
    return f"Best regards,\n{signature_name}\n{company_name}"


class ChaseMailer:
    """Delivery sender backed by the Brevo transactional API.

    In test mode every email goes to the configured test recipient instead of
    the customer. The receipt reports the address actually used.
    """

    def __init__(
        self,
        client: BrevoClient,
        test_mode: bool,
        test_recipient: str = "",
        signature_name: str = "Credit Control Team",
        company_name: str = "Credit Control",
    ):
        self.client = client
        self.test_mode = test_mode
        self.test_recipient = test_recipient
        self.signature = signature_block(signature_name, company_name)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "ChaseMailer":
        source = source or default_settings
        return cls(
            BrevoClient(
                api_key=source.BREVO_API_KEY,
                sender_email=source.COMPANY_EMAIL,
                sender_name=source.COMPANY_NAME,
                base_url=source.BREVO_BASE_URL,
                timeout=source.MAIL_TIMEOUT_S,
            ),
            test_mode=source.email_test_mode(),
            test_recipient=source.TEST_EMAIL_RECIPIENT,
            signature_name=source.SIGNATURE_NAME,
            company_name=source.COMPANY_NAME,
        )

    def resolve_recipient(self, recipient: str) -> str:
        if not self.test_mode:
            return recipient
        if not self.test_recipient:
            raise DeliveryError("Test mode is on but TEST_EMAIL_RECIPIENT is not set")
        return self.test_recipient

    def compose(self, body: str) -> str:
        return f"{body.rstrip()}\n\n{self.signature}"

    def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        """Send one chase email.

        Raises:
            DeliveryError: If routing is misconfigured or the provider rejects the email
        """
        target = self.resolve_recipient(recipient)
        rerouted = target != recipient
        if rerouted:
            self.logger.info(
                "chase_email_rerouted", extra={"original_to": recipient, "to": target}
            )

        response = self.client.send_transactional(
            to=target, subject=subject, text=self.compose(body), reference=recipient
        )
        if not response.success:
            raise DeliveryError(response.error or "Delivery failed")

        return DeliveryReceipt(
            delivery_id=response.message_id, recipient=target, rerouted=rerouted
        )

    def close(self) -> None:
        self.client.close()
