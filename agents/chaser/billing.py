"""Billing sync: applies provider snapshots and payment notices to the invoice store.

The sync owns monetary facts and billing status. It never writes chase
fields, and a terminal invoice is never reopened.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError

from backend.core.observability.metrics import increment_billing_events

from .clock import Clock, system_clock
from .dto import BillingFacts, Invoice, InvoiceStatus
from .store import InvoiceStore

_PROVIDER_STATUS = {
    "paid": InvoiceStatus.PAID,
    "void": InvoiceStatus.CANCELLED,
    "uncollectible": InvoiceStatus.CANCELLED,
}


def facts_from_provider_invoice(obj: Mapping[str, Any], now: datetime) -> BillingFacts:
    """Map a provider invoice object (Stripe shape) to ``BillingFacts``.

    ``amount_due`` is in minor units and ``due_date`` is epoch seconds.
    Days overdue are left to be derived from the due date at evaluation time.

    Raises:
        ValueError: If the object has no due date or recipient
    """
    if not obj.get("due_date"):
        raise ValueError(f"Invoice {obj.get('id')} has no due date")
    recipient = obj.get("customer_email")
    if not recipient:
        raise ValueError(f"Invoice {obj.get('id')} has no customer email")

    due = datetime.fromtimestamp(int(obj["due_date"]), tz=UTC).date()
    status = _PROVIDER_STATUS.get(str(obj.get("status") or ""))
    if status is None:
        status = InvoiceStatus.OVERDUE if due < now.date() else InvoiceStatus.UNPAID

    return BillingFacts(
        external_id=obj["id"],
        recipient=recipient,
        customer_name=obj.get("customer_name"),
        amount=Decimal(int(obj.get("amount_due") or 0)) / 100,
        currency=str(obj.get("currency") or "usd").upper(),
        due_date=due,
        status=status,
        payment_link=obj.get("hosted_invoice_url"),
    )


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    now: datetime,
    tolerance_s: int = 300,
) -> bool:
    """Check a ``t=<unix>,v1=<hex>`` signature header against the raw body.

    The signed message is ``"<t>." + body`` under HMAC-SHA256. Timestamps
    further than ``tolerance_s`` from ``now`` are rejected.
    """
    if not secret or not header:
        return False

    timestamp = None
    signatures = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    try:
        signed_at = int(timestamp)
    except (TypeError, ValueError):
        return False
    if abs(now.timestamp() - signed_at) > tolerance_s:
        return False

    expected = hmac.new(
        secret.encode(), f"{signed_at}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


@dataclass
class SyncResult:
    """Counts from applying a batch of provider snapshots."""

    created: int = 0
    updated: int = 0
    terminal: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "terminal": self.terminal,
            "errors": self.errors,
        }


class BillingSync:
    """Reacts to billing facts; never polls the provider itself."""

    def __init__(self, invoices: InvoiceStore, clock: Clock = system_clock):
        self.invoices = invoices
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._handlers: dict[str, Callable[[Mapping[str, Any]], str]] = {
            "invoice.payment_succeeded": self._on_paid,
            "invoice.paid": self._on_paid,
            "invoice.payment_failed": self._on_payment_failed,
            "invoice.voided": self._on_cancelled,
            "invoice.marked_uncollectible": self._on_cancelled,
            "invoice.created": self._on_snapshot,
            "invoice.updated": self._on_snapshot,
        }

    def upsert(self, facts: BillingFacts) -> Invoice:
        """Create the invoice on first sight, otherwise apply the snapshot."""
        now = self.clock()
        existing = self.invoices.find_by_external_id(facts.external_id)
        if existing is None:
            try:
                return self.invoices.insert(facts, now)
            except IntegrityError:
                # Inserted concurrently; fall through to the update path
                existing = self.invoices.find_by_external_id(facts.external_id)
                if existing is None:
                    raise

        if facts.status.is_terminal:
            self.invoices.mark_terminal(existing.id, facts.status, now)
        else:
            self.invoices.update_facts(existing.id, facts, now)
        return self.invoices.get(existing.id)

    def sync(self, snapshots: Iterable[BillingFacts]) -> SyncResult:
        """Apply a batch of snapshots, isolating per-invoice failures."""
        result = SyncResult()
        for facts in snapshots:
            try:
                before = self.invoices.find_by_external_id(facts.external_id)
                after = self.upsert(facts)
            except (ValueError, IntegrityError) as e:
                result.errors.append(f"{facts.external_id}: {e}")
                continue
            if before is None:
                result.created += 1
            elif after.is_terminal:
                result.terminal += 1
            else:
                result.updated += 1
        self.logger.info("billing_sync_complete", extra=result.to_dict())
        return result

    def record_payment(self, external_id: str) -> bool:
        return self._mark_terminal(external_id, InvoiceStatus.PAID)

    def record_cancellation(self, external_id: str) -> bool:
        return self._mark_terminal(external_id, InvoiceStatus.CANCELLED)

    def record_payment_failed(self, external_id: str) -> bool:
        invoice = self.invoices.find_by_external_id(external_id)
        if invoice is None:
            return False
        return self.invoices.mark_unpaid(invoice.id, self.clock())

    def _mark_terminal(self, external_id: str, status: InvoiceStatus) -> bool:
        invoice = self.invoices.find_by_external_id(external_id)
        if invoice is None:
            self.logger.warning(
                "billing_notice_unknown_invoice",
                extra={"external_id": external_id, "status": status.value},
            )
            return False
        changed = self.invoices.mark_terminal(invoice.id, status, self.clock())
        if changed:
            self.logger.info(
                "invoice_terminal",
                extra={"invoice_id": invoice.id, "external_id": external_id, "status": status.value},
            )
        return changed

    def handle_event(self, event: Mapping[str, Any]) -> str:
        """Dispatch a provider webhook event.

        Returns:
            Short action label, ``"ignored"`` for unhandled event types

        Raises:
            ValueError: The event has no invoice object
            KeyError: The invoice object has no id
        """
        event_type = str(event.get("type") or "")
        handler = self._handlers.get(event_type)
        if handler is None:
            self.logger.debug("billing_event_ignored", extra={"event_type": event_type})
            return "ignored"

        data = event.get("data")
        obj = data.get("object") if isinstance(data, Mapping) else None
        if not isinstance(obj, Mapping):
            raise ValueError(f"Event {event_type!r} carries no data.object")

        increment_billing_events(event_type)
        return handler(obj)

    def _on_paid(self, obj: Mapping[str, Any]) -> str:
        return "paid" if self.record_payment(obj["id"]) else "noop"

    def _on_cancelled(self, obj: Mapping[str, Any]) -> str:
        return "cancelled" if self.record_cancellation(obj["id"]) else "noop"

    def _on_payment_failed(self, obj: Mapping[str, Any]) -> str:
        return "unpaid" if self.record_payment_failed(obj["id"]) else "noop"

    def _on_snapshot(self, obj: Mapping[str, Any]) -> str:
        if not obj.get("due_date"):
            return "noop"
        self.upsert(facts_from_provider_invoice(obj, self.clock()))
        return "upserted"
