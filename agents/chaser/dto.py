"""Data Transfer Objects for the chase engine.

Provides type-safe data structures for invoices, chase records and
evaluation outcomes with serialization support.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class InvoiceStatus(str, Enum):
    """Billing lifecycle status."""

    UNPAID = "unpaid"
    OVERDUE = "overdue"
    PAID = "paid"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


ACTIVE_STATUSES = (InvoiceStatus.UNPAID, InvoiceStatus.OVERDUE)
TERMINAL_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


class ChaseEmailStatus(str, Enum):
    """Delivery status of a chase record."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChaseState(Enum):
    """Chase sub-state computed once per evaluation from the raw invoice fields."""

    TERMINAL = "terminal"
    NOT_YET_DUE = "not_yet_due"
    DISABLED = "disabled"
    PAUSED = "paused"
    CAPPED = "capped"
    ELIGIBLE = "eligible"


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class Invoice:
    """An invoice tracked for chasing, as read from the invoice store."""

    id: int
    external_id: str
    recipient: str
    amount: Decimal
    currency: str
    due_date: date
    status: InvoiceStatus
    customer_name: str | None = None
    payment_link: str | None = None
    overdue_days: int | None = None
    last_chase_at: datetime | None = None
    chase_count: int = 0
    chase_paused: bool = False
    paid_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "external_id": self.external_id,
            "customer_email": self.recipient,
            "customer_name": self.customer_name,
            "amount": str(self.amount),
            "currency": self.currency,
            "due_date": _iso(self.due_date),
            "status": self.status.value,
            "payment_link": self.payment_link,
            "overdue_days": self.overdue_days,
            "last_chase_at": _iso(self.last_chase_at),
            "chase_count": self.chase_count,
            "chase_paused": self.chase_paused,
            "paid_at": _iso(self.paid_at),
        }


@dataclass
class BillingFacts:
    """Snapshot of an invoice as reported by the billing provider."""

    external_id: str
    recipient: str
    amount: Decimal
    currency: str
    due_date: date
    status: InvoiceStatus = InvoiceStatus.UNPAID
    overdue_days: int | None = None
    customer_name: str | None = None
    payment_link: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BillingFacts":
        """Create from dictionary."""
        due = data["due_date"]
        return cls(
            external_id=data["external_id"],
            recipient=data["recipient"],
            amount=Decimal(str(data["amount"])),
            currency=str(data.get("currency") or "USD").upper(),
            due_date=due if isinstance(due, date) else date.fromisoformat(due),
            status=InvoiceStatus(data.get("status", "unpaid")),
            overdue_days=data.get("overdue_days"),
            customer_name=data.get("customer_name"),
            payment_link=data.get("payment_link"),
        )


@dataclass
class ChaseRecord:
    """One chase email attempt tied to an invoice."""

    id: int
    invoice_id: int
    overdue_day: int
    status: ChaseEmailStatus
    subject: str = ""
    body: str = ""
    sent_to: str | None = None
    sent_at: datetime | None = None
    delivery_id: str | None = None
    error: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "overdue_day": self.overdue_day,
            "status": self.status.value,
            "subject": self.subject,
            "body": self.body,
            "sent_to": self.sent_to,
            "sent_at": _iso(self.sent_at),
            "delivery_id": self.delivery_id,
            "error": self.error,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class GeneratedEmail:
    """Subject and body produced by a content generator (no signature)."""

    subject: str
    body: str


@dataclass(frozen=True)
class DeliveryReceipt:
    """Result of a successful hand-off to the delivery provider."""

    delivery_id: str | None
    recipient: str
    rerouted: bool = False


@dataclass(frozen=True)
class ChaseOptions:
    """Operator overrides for one evaluation."""

    bypass_paused: bool = False
    bypass_interval: bool = False


DEFAULT_OPTIONS = ChaseOptions()
EXPEDITE_OPTIONS = ChaseOptions(bypass_paused=True, bypass_interval=True)


@dataclass(frozen=True)
class ChaseDecision:
    """Eligibility verdict for one invoice at one instant."""

    state: ChaseState
    days_overdue: int
    required_interval_hours: int | None
    reason: str

    @property
    def eligible(self) -> bool:
        return self.state is ChaseState.ELIGIBLE


@dataclass(frozen=True)
class ChaseClaim:
    """Exclusive right to attempt one chase for an invoice."""

    token: str
    record: ChaseRecord


@dataclass
class ChaseOutcome:
    """Result of evaluating one invoice."""

    sent: bool
    state: ChaseState
    days_overdue: int
    reason: str
    conflict: bool = False
    record: ChaseRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "state": self.state.value,
            "days_overdue": self.days_overdue,
            "reason": self.reason,
            "conflict": self.conflict,
            "record": self.record.to_dict() if self.record else None,
        }


@dataclass
class NextChaseInfo:
    """Display-only projection of when the next chase could go out."""

    next_chase_at: datetime | None = None
    days_until_next_chase: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "next_chase_date": _iso(self.next_chase_at),
            "days_until_next_chase": self.days_until_next_chase,
        }


@dataclass
class BatchResult:
    """Aggregate result of one batch run."""

    candidates: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    processing_time_seconds: float = 0.0

    def add_error(self, error: str) -> None:
        self.failed += 1
        self.errors.append(error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "candidates": self.candidates,
            "failed": self.failed,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "processing_time_seconds": self.processing_time_seconds,
        }
