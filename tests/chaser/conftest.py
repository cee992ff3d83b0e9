"""Fixtures for chase engine tests: SQLite store, frozen clock and stub collaborators."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, update

from agents.chaser.config import ChaseConfig
from agents.chaser.dto import BillingFacts, DeliveryReceipt, GeneratedEmail, InvoiceStatus
from agents.chaser.engine import ChaseEngine
from agents.chaser.store import (
    INVOICES,
    AppConfigStore,
    ChaseRecordStore,
    InvoiceStore,
    create_schema,
)
from backend.core.observability.metrics import reset_metrics

NOW = datetime(2026, 3, 20, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StubGenerator:
    def __init__(self):
        self.calls: list[tuple[int, int]] = []
        self.error: Exception | None = None

    def generate(self, invoice, overdue_days):
        self.calls.append((invoice.id, overdue_days))
        if self.error is not None:
            raise self.error
        return GeneratedEmail(
            subject=f"Reminder: invoice {invoice.external_id}",
            body=f"Dear customer,\n\nInvoice {invoice.external_id} is {overdue_days} days overdue.",
        )


class StubSender:
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.error: Exception | None = None
        self.fail_for: set[str] = set()
        self.on_send = None

    def send(self, recipient, subject, body):
        if self.on_send is not None:
            self.on_send(recipient)
        if self.error is not None:
            raise self.error
        if recipient in self.fail_for:
            raise RuntimeError(f"mailbox unavailable for {recipient}")
        self.sent.append((recipient, subject, body))
        return DeliveryReceipt(delivery_id=f"msg-{len(self.sent)}", recipient=recipient)


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'chaser.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def invoice_store(db_engine) -> InvoiceStore:
    return InvoiceStore(db_engine)


@pytest.fixture
def record_store(db_engine) -> ChaseRecordStore:
    return ChaseRecordStore(db_engine)


@pytest.fixture
def app_config_store(db_engine) -> AppConfigStore:
    return AppConfigStore(db_engine)


@pytest.fixture
def config() -> ChaseConfig:
    return ChaseConfig()


@pytest.fixture
def generator() -> StubGenerator:
    return StubGenerator()


@pytest.fixture
def sender() -> StubSender:
    return StubSender()


@pytest.fixture
def chase_engine(invoice_store, generator, sender, clock) -> ChaseEngine:
    return ChaseEngine(invoice_store, generator, sender, clock=clock)


@pytest.fixture
def make_invoice(db_engine, invoice_store, clock):
    """Insert an invoice ``days_overdue`` days past due with the given chase state."""
    counter = {"n": 0}

    def _make(
        days_overdue: int = 12,
        status: InvoiceStatus = InvoiceStatus.UNPAID,
        chase_count: int = 0,
        last_chase_hours_ago: float | None = None,
        paused: bool = False,
        overdue_days: int | None = None,
        recipient: str | None = None,
        external_id: str | None = None,
    ):
        counter["n"] += 1
        external_id = external_id or f"in_{counter['n']:04d}"
        facts = BillingFacts(
            external_id=external_id,
            recipient=recipient or f"billing{counter['n']}@customer.example",
            customer_name="Jane Doe",
            amount=Decimal("1250.00"),
            currency="USD",
            due_date=(clock.now - timedelta(days=days_overdue)).date(),
            status=status,
            overdue_days=overdue_days,
            payment_link=f"https://pay.example/{external_id}",
        )
        invoice = invoice_store.insert(facts, clock.now)

        last_chase_at = None
        if last_chase_hours_ago is not None:
            last_chase_at = clock.now - timedelta(hours=last_chase_hours_ago)
        with db_engine.begin() as conn:
            conn.execute(
                update(INVOICES)
                .where(INVOICES.c.id == invoice.id)
                .values(
                    chase_count=chase_count,
                    last_chase_at=last_chase_at,
                    chase_paused=paused,
                )
            )
        return invoice_store.get(invoice.id)

    return _make
