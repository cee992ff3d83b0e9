from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import sqlalchemy as sa
from alembic import command
from alembic.config import Config
from sqlalchemy.engine import Engine

from agents.chaser.config import ChaseConfig
from agents.chaser.dto import (
    BillingFacts,
    ChaseEmailStatus,
    DeliveryReceipt,
    GeneratedEmail,
    InvoiceStatus,
)
from agents.chaser.engine import ChaseEngine
from agents.chaser.store import AppConfigStore, ChaseRecordStore, InvoiceStore

RUN_DB_TESTS = os.getenv("RUN_DB_TESTS") == "1"
DB_URL = os.getenv("CHASER_DB_URL") or os.getenv("DATABASE_URL")

pytestmark = pytest.mark.skipif(
    not RUN_DB_TESTS or not DB_URL,
    reason="Set RUN_DB_TESTS=1 and DATABASE_URL/CHASER_DB_URL for chaser DB tests.",
)


def _alembic_config() -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", "ops/alembic")
    cfg.set_main_option("sqlalchemy.url", DB_URL)
    return cfg


@pytest.fixture(scope="module")
def engine() -> Iterator[Engine]:
    engine = sa.create_engine(DB_URL, future=True)
    try:
        command.upgrade(_alembic_config(), "head")
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(autouse=True)
def _clean_tables(engine: Engine) -> Iterator[None]:
    yield
    with engine.begin() as conn:
        conn.execute(sa.text("DELETE FROM chase_emails"))
        conn.execute(sa.text("DELETE FROM invoices"))


def _insert(store: InvoiceStore, now: datetime, days_overdue: int = 12):
    facts = BillingFacts(
        external_id=f"in_db_{now.timestamp()}_{days_overdue}",
        recipient="ap@customer.example",
        customer_name="Jane Doe",
        amount=Decimal("420.00"),
        currency="USD",
        due_date=(now - timedelta(days=days_overdue)).date(),
        status=InvoiceStatus.OVERDUE,
    )
    return store.insert(facts, now)


def test_migration_seeds_app_config(engine):
    values = AppConfigStore(engine).get_all()

    assert values["chase_enabled"] == "true"
    assert values["max_chase_count"] == "4"
    assert values["chase_interval_tiers"] == "10:24,7:48,5:72"


def test_status_check_constraint(engine):
    with pytest.raises(sa.exc.IntegrityError):
        with engine.begin() as conn:
            conn.execute(
                sa.text(
                    "INSERT INTO invoices (external_id, customer_email, amount, due_date, status, "
                    "created_at, updated_at) VALUES ('bad', 'x@y.example', 1, CURRENT_DATE, "
                    "'archived', now(), now())"
                )
            )


class _Sender:
    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, recipient, subject, body):
        with self._lock:
            self.sent.append(recipient)
            return DeliveryReceipt(delivery_id=f"pg-{len(self.sent)}", recipient=recipient)


class _Generator:
    def generate(self, invoice, overdue_days):
        return GeneratedEmail(subject="Reminder", body=f"{overdue_days} days overdue")


def test_concurrent_evaluations_send_once(engine):
    now = datetime.now(UTC)
    invoices = InvoiceStore(engine)
    snapshot = _insert(invoices, now)
    sender = _Sender()
    config = ChaseConfig()
    workers = 4
    barrier = threading.Barrier(workers)
    outcomes = []

    def _run():
        chase_engine = ChaseEngine(invoices, _Generator(), sender)
        barrier.wait()
        outcomes.append(chase_engine.evaluate(snapshot, config))

    threads = [threading.Thread(target=_run) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sum(1 for outcome in outcomes if outcome.sent) == 1
    assert len(sender.sent) == 1
    assert invoices.get(snapshot.id).chase_count == 1
    records = ChaseRecordStore(engine).list_for_invoice(snapshot.id)
    assert [r.status for r in records] == [ChaseEmailStatus.SENT]


def test_timestamps_round_trip_as_utc(engine):
    now = datetime(2026, 3, 20, 12, 0, tzinfo=UTC)
    invoices = InvoiceStore(engine)
    invoice = _insert(invoices, now)

    assert invoices.get(invoice.id).created_at == now
