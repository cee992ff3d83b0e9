"""SQLAlchemy Core persistence for invoices, chase records and app config.

Every chase-state write on an invoice row is a conditional UPDATE keyed on
the values the caller read (``chase_count``, ``last_chase_at``, status and
the claim token). A write that matches no row is a lost race, never an error.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    and_,
    false,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from .clock import as_utc
from .config import ChaseConfig
from .dto import (
    ACTIVE_STATUSES,
    BillingFacts,
    ChaseClaim,
    ChaseEmailStatus,
    ChaseRecord,
    DeliveryReceipt,
    GeneratedEmail,
    Invoice,
    InvoiceStatus,
)
from .errors import InvoiceNotFoundError, StoreUnavailableError

ABANDONED_CLAIM_ERROR = "abandoned claim"

_ACTIVE = [status.value for status in ACTIVE_STATUSES]


def get_tables(metadata: MetaData) -> tuple[Table, Table, Table]:
    """Return the invoices, chase_emails and app_config tables for ``metadata``."""
    invoices = Table(
        "invoices",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("external_id", String(255), nullable=False, unique=True),
        Column("customer_email", String(320), nullable=False),
        Column("customer_name", String(255)),
        Column("amount", Numeric(12, 2), nullable=False),
        Column("currency", String(3), nullable=False, server_default="USD"),
        Column("due_date", Date, nullable=False),
        Column("status", String(16), nullable=False, server_default="unpaid"),
        Column("payment_link", Text),
        Column("overdue_days", Integer),
        Column("last_chase_at", DateTime(timezone=True)),
        Column("chase_count", Integer, nullable=False, server_default="0"),
        Column("chase_paused", Boolean, nullable=False, server_default=false()),
        Column("chase_claim", String(64)),
        Column("chase_claimed_at", DateTime(timezone=True)),
        Column("paid_at", DateTime(timezone=True)),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        Index("ix_invoices_status_due_date", "status", "due_date"),
        extend_existing=True,
    )
    chase_emails = Table(
        "chase_emails",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column(
            "invoice_id",
            Integer,
            ForeignKey("invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        Column("overdue_day", Integer, nullable=False),
        Column("subject_line", Text, nullable=False, server_default=""),
        Column("generated_text", Text, nullable=False, server_default=""),
        Column("sent_to", String(320)),
        Column("delivery_id", String(255)),
        Column("status", String(16), nullable=False, server_default="pending"),
        Column("error", Text),
        Column("sent_at", DateTime(timezone=True)),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        Index("ix_chase_emails_invoice_id_status", "invoice_id", "status"),
        extend_existing=True,
    )
    app_config = Table(
        "app_config",
        metadata,
        Column("key", String(128), primary_key=True),
        Column("value", Text, nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        extend_existing=True,
    )
    return invoices, chase_emails, app_config


_METADATA = MetaData()
INVOICES, CHASE_EMAILS, APP_CONFIG = get_tables(_METADATA)


def get_metadata() -> MetaData:
    return _METADATA


def create_schema(engine: Engine) -> None:
    """Create all chaser tables (tests and local development)."""
    _METADATA.create_all(engine)


@contextmanager
def _begin(engine: Engine) -> Iterator[Connection]:
    try:
        with engine.begin() as conn:
            yield conn
    except OperationalError as exc:
        raise StoreUnavailableError(f"Invoice store unavailable: {exc}") from exc


def _row_to_invoice(row) -> Invoice:
    return Invoice(
        id=row.id,
        external_id=row.external_id,
        recipient=row.customer_email,
        customer_name=row.customer_name,
        amount=Decimal(str(row.amount)),
        currency=row.currency,
        due_date=row.due_date,
        status=InvoiceStatus(row.status),
        payment_link=row.payment_link,
        overdue_days=row.overdue_days,
        last_chase_at=as_utc(row.last_chase_at),
        chase_count=row.chase_count or 0,
        chase_paused=bool(row.chase_paused),
        paid_at=as_utc(row.paid_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _row_to_record(row) -> ChaseRecord:
    return ChaseRecord(
        id=row.id,
        invoice_id=row.invoice_id,
        overdue_day=row.overdue_day,
        status=ChaseEmailStatus(row.status),
        subject=row.subject_line or "",
        body=row.generated_text or "",
        sent_to=row.sent_to,
        sent_at=as_utc(row.sent_at),
        delivery_id=row.delivery_id,
        error=row.error,
        created_at=as_utc(row.created_at),
    )


def _chase_fields_match(invoice: Invoice):
    """WHERE clause: the invoice still has the chase fields ``invoice`` was read with."""
    if invoice.last_chase_at is None:
        last_chase = INVOICES.c.last_chase_at.is_(None)
    else:
        last_chase = INVOICES.c.last_chase_at == as_utc(invoice.last_chase_at)
    return and_(
        INVOICES.c.id == invoice.id,
        INVOICES.c.status.in_(_ACTIVE),
        INVOICES.c.chase_count == invoice.chase_count,
        last_chase,
    )


def _cancel_pending(conn: Connection, invoice_id: int, now: datetime) -> int:
    result = conn.execute(
        update(CHASE_EMAILS)
        .where(CHASE_EMAILS.c.invoice_id == invoice_id)
        .where(CHASE_EMAILS.c.status == ChaseEmailStatus.PENDING.value)
        .values(status=ChaseEmailStatus.CANCELLED.value, updated_at=now)
    )
    return result.rowcount


class _CommitRejected(Exception):
    pass


class InvoiceStore:
    """Invoice rows and the chase state machine's conditional writes."""

    def __init__(self, engine: Engine):
        self.engine = engine

    # Reads

    def get(self, invoice_id: int) -> Invoice:
        with _begin(self.engine) as conn:
            row = conn.execute(select(INVOICES).where(INVOICES.c.id == invoice_id)).first()
        if row is None:
            raise InvoiceNotFoundError(invoice_id)
        return _row_to_invoice(row)

    def find_by_external_id(self, external_id: str) -> Invoice | None:
        with _begin(self.engine) as conn:
            row = conn.execute(
                select(INVOICES).where(INVOICES.c.external_id == external_id)
            ).first()
        return _row_to_invoice(row) if row is not None else None

    def list_candidates(
        self, today: date, limit: int | None = None, offset: int = 0
    ) -> list[Invoice]:
        """Active invoices whose due date is in the past, oldest due first."""
        query = (
            select(INVOICES)
            .where(INVOICES.c.status.in_(_ACTIVE))
            .where(INVOICES.c.due_date < today)
            .order_by(INVOICES.c.due_date, INVOICES.c.id)
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        with _begin(self.engine) as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_invoice(row) for row in rows]

    def overdue_summary(self, today: date) -> dict[str, object]:
        """Invoice totals: all rows, plus count and amount of active ones past due."""
        past_due = and_(INVOICES.c.status.in_(_ACTIVE), INVOICES.c.due_date < today)
        with _begin(self.engine) as conn:
            total = conn.execute(select(func.count()).select_from(INVOICES)).scalar_one()
            overdue, amount = conn.execute(
                select(func.count(), func.coalesce(func.sum(INVOICES.c.amount), 0))
                .select_from(INVOICES)
                .where(past_due)
            ).one()
        return {
            "total_invoices": int(total),
            "overdue_invoices": int(overdue),
            "total_amount_overdue": Decimal(str(amount)),
        }

    # Billing facts

    def insert(self, facts: BillingFacts, now: datetime) -> Invoice:
        now = as_utc(now)
        with _begin(self.engine) as conn:
            result = conn.execute(
                insert(INVOICES).values(
                    external_id=facts.external_id,
                    customer_email=facts.recipient,
                    customer_name=facts.customer_name,
                    amount=facts.amount,
                    currency=facts.currency,
                    due_date=facts.due_date,
                    status=facts.status.value,
                    payment_link=facts.payment_link,
                    overdue_days=facts.overdue_days,
                    chase_count=0,
                    chase_paused=False,
                    paid_at=now if facts.status is InvoiceStatus.PAID else None,
                    created_at=now,
                    updated_at=now,
                )
            )
            invoice_id = result.inserted_primary_key[0]
        return self.get(invoice_id)

    def update_facts(self, invoice_id: int, facts: BillingFacts, now: datetime) -> bool:
        """Apply a corrective provider snapshot to a non-terminal invoice.

        Chase fields are never touched here. Returns False when the invoice
        is already terminal (terminal status is sticky).
        """
        values = {
            "customer_email": facts.recipient,
            "customer_name": facts.customer_name,
            "amount": facts.amount,
            "currency": facts.currency,
            "due_date": facts.due_date,
            "payment_link": facts.payment_link,
            "overdue_days": facts.overdue_days,
            "updated_at": as_utc(now),
        }
        if not facts.status.is_terminal:
            values["status"] = facts.status.value
        with _begin(self.engine) as conn:
            result = conn.execute(
                update(INVOICES)
                .where(INVOICES.c.id == invoice_id)
                .where(INVOICES.c.status.in_(_ACTIVE))
                .values(**values)
            )
        return result.rowcount > 0

    def mark_terminal(self, invoice_id: int, status: InvoiceStatus, now: datetime) -> bool:
        """Move an active invoice to ``paid``/``cancelled`` and cancel pending records."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        now = as_utc(now)
        values = {"status": status.value, "updated_at": now}
        if status is InvoiceStatus.PAID:
            values["paid_at"] = now
        with _begin(self.engine) as conn:
            result = conn.execute(
                update(INVOICES)
                .where(INVOICES.c.id == invoice_id)
                .where(INVOICES.c.status.in_(_ACTIVE))
                .values(**values)
            )
            if result.rowcount == 0:
                return False
            _cancel_pending(conn, invoice_id, now)
        return True

    def mark_unpaid(self, invoice_id: int, now: datetime) -> bool:
        with _begin(self.engine) as conn:
            result = conn.execute(
                update(INVOICES)
                .where(INVOICES.c.id == invoice_id)
                .where(INVOICES.c.status.in_(_ACTIVE))
                .values(status=InvoiceStatus.UNPAID.value, updated_at=as_utc(now))
            )
        return result.rowcount > 0

    # Operator controls

    def set_paused(self, invoice_id: int, paused: bool, now: datetime) -> Invoice:
        with _begin(self.engine) as conn:
            result = conn.execute(
                update(INVOICES)
                .where(INVOICES.c.id == invoice_id)
                .values(chase_paused=paused, updated_at=as_utc(now))
            )
        if result.rowcount == 0:
            raise InvoiceNotFoundError(invoice_id)
        return self.get(invoice_id)

    # Chase state machine

    def claim(
        self,
        invoice: Invoice,
        overdue_day: int,
        token: str,
        now: datetime,
        ttl_seconds: int,
    ) -> ChaseClaim | None:
        """Take the exclusive right to chase ``invoice`` and open a pending record.

        The claim only succeeds if the invoice still carries the chase fields
        it was read with and no other live claim exists. A claim older than
        ``ttl_seconds`` is treated as abandoned and taken over; its pending
        record is marked failed.

        Returns:
            The claim, or None when another evaluation won the race
        """
        now = as_utc(now)
        stale_before = now - timedelta(seconds=ttl_seconds)
        with _begin(self.engine) as conn:
            result = conn.execute(
                update(INVOICES)
                .where(_chase_fields_match(invoice))
                .where(
                    or_(
                        INVOICES.c.chase_claim.is_(None),
                        INVOICES.c.chase_claimed_at < stale_before,
                    )
                )
                .values(chase_claim=token, chase_claimed_at=now)
            )
            if result.rowcount == 0:
                return None

            conn.execute(
                update(CHASE_EMAILS)
                .where(CHASE_EMAILS.c.invoice_id == invoice.id)
                .where(CHASE_EMAILS.c.status == ChaseEmailStatus.PENDING.value)
                .values(
                    status=ChaseEmailStatus.FAILED.value,
                    error=ABANDONED_CLAIM_ERROR,
                    updated_at=now,
                )
            )
            inserted = conn.execute(
                insert(CHASE_EMAILS).values(
                    invoice_id=invoice.id,
                    overdue_day=overdue_day,
                    subject_line="",
                    generated_text="",
                    status=ChaseEmailStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            record_id = inserted.inserted_primary_key[0]

        record = ChaseRecord(
            id=record_id,
            invoice_id=invoice.id,
            overdue_day=overdue_day,
            status=ChaseEmailStatus.PENDING,
            created_at=now,
        )
        return ChaseClaim(token=token, record=record)

    def commit_sent(
        self,
        invoice: Invoice,
        claim: ChaseClaim,
        email: GeneratedEmail,
        receipt: DeliveryReceipt,
        now: datetime,
    ) -> ChaseRecord | None:
        """Atomically record a delivered chase and advance the invoice.

        Both writes are conditional. If the invoice turned terminal, its chase
        fields moved, or the claim was lost, nothing is committed, the claim
        is released and the record ends ``cancelled``.

        Returns:
            The finalised ``sent`` record, or None when the commit was rejected
        """
        now = as_utc(now)
        try:
            with _begin(self.engine) as conn:
                advanced = conn.execute(
                    update(INVOICES)
                    .where(_chase_fields_match(invoice))
                    .where(INVOICES.c.chase_claim == claim.token)
                    .values(
                        last_chase_at=now,
                        chase_count=INVOICES.c.chase_count + 1,
                        status=InvoiceStatus.OVERDUE.value,
                        chase_claim=None,
                        chase_claimed_at=None,
                        updated_at=now,
                    )
                )
                if advanced.rowcount == 0:
                    raise _CommitRejected()
                finalised = conn.execute(
                    update(CHASE_EMAILS)
                    .where(CHASE_EMAILS.c.id == claim.record.id)
                    .where(CHASE_EMAILS.c.status == ChaseEmailStatus.PENDING.value)
                    .values(
                        status=ChaseEmailStatus.SENT.value,
                        subject_line=email.subject,
                        generated_text=email.body,
                        sent_to=receipt.recipient,
                        delivery_id=receipt.delivery_id,
                        sent_at=now,
                        updated_at=now,
                    )
                )
                if finalised.rowcount == 0:
                    raise _CommitRejected()
        except _CommitRejected:
            self._finish(
                claim,
                ChaseEmailStatus.CANCELLED,
                now,
                error="commit rejected",
                email=email,
                receipt=receipt,
            )
            return None

        return ChaseRecord(
            id=claim.record.id,
            invoice_id=invoice.id,
            overdue_day=claim.record.overdue_day,
            status=ChaseEmailStatus.SENT,
            subject=email.subject,
            body=email.body,
            sent_to=receipt.recipient,
            sent_at=now,
            delivery_id=receipt.delivery_id,
            created_at=claim.record.created_at,
        )

    def release_failed(
        self,
        claim: ChaseClaim,
        error: str,
        now: datetime,
        email: GeneratedEmail | None = None,
    ) -> ChaseRecord:
        """Finalise a claimed attempt as ``failed``; invoice chase fields stay as they were."""
        return self._finish(claim, ChaseEmailStatus.FAILED, as_utc(now), error=error, email=email)

    def _finish(
        self,
        claim: ChaseClaim,
        status: ChaseEmailStatus,
        now: datetime,
        error: str | None = None,
        email: GeneratedEmail | None = None,
        receipt: DeliveryReceipt | None = None,
    ) -> ChaseRecord:
        values = {"status": status.value, "error": error, "updated_at": now}
        if email is not None:
            values.update(subject_line=email.subject, generated_text=email.body)
        if receipt is not None:
            values.update(sent_to=receipt.recipient, delivery_id=receipt.delivery_id)

        with _begin(self.engine) as conn:
            conn.execute(
                update(INVOICES)
                .where(INVOICES.c.id == claim.record.invoice_id)
                .where(INVOICES.c.chase_claim == claim.token)
                .values(chase_claim=None, chase_claimed_at=None)
            )
            # A payment notice may already have cancelled the record
            conn.execute(
                update(CHASE_EMAILS)
                .where(CHASE_EMAILS.c.id == claim.record.id)
                .where(CHASE_EMAILS.c.status == ChaseEmailStatus.PENDING.value)
                .values(**values)
            )
            row = conn.execute(
                select(CHASE_EMAILS).where(CHASE_EMAILS.c.id == claim.record.id)
            ).first()
        return _row_to_record(row)


class ChaseRecordStore:
    """Read access to the append-only chase email log."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, record_id: int) -> ChaseRecord | None:
        with _begin(self.engine) as conn:
            row = conn.execute(select(CHASE_EMAILS).where(CHASE_EMAILS.c.id == record_id)).first()
        return _row_to_record(row) if row is not None else None

    def list_for_invoice(self, invoice_id: int) -> list[ChaseRecord]:
        """All records of one invoice, newest first."""
        with _begin(self.engine) as conn:
            rows = conn.execute(
                select(CHASE_EMAILS)
                .where(CHASE_EMAILS.c.invoice_id == invoice_id)
                .order_by(CHASE_EMAILS.c.created_at.desc(), CHASE_EMAILS.c.id.desc())
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def count_by_status(self, invoice_id: int, status: ChaseEmailStatus) -> int:
        return sum(1 for record in self.list_for_invoice(invoice_id) if record.status is status)

    def count_all_by_status(self, status: ChaseEmailStatus) -> int:
        with _begin(self.engine) as conn:
            return conn.execute(
                select(func.count())
                .select_from(CHASE_EMAILS)
                .where(CHASE_EMAILS.c.status == status.value)
            ).scalar_one()


class AppConfigStore:
    """Key/value rows that override environment chase defaults."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get_all(self) -> dict[str, str]:
        with _begin(self.engine) as conn:
            rows = conn.execute(select(APP_CONFIG.c.key, APP_CONFIG.c.value)).fetchall()
        return {row.key: row.value for row in rows}

    def set(self, key: str, value: str, now: datetime) -> None:
        now = as_utc(now)
        with _begin(self.engine) as conn:
            result = conn.execute(
                update(APP_CONFIG)
                .where(APP_CONFIG.c.key == key)
                .values(value=value, updated_at=now)
            )
            if result.rowcount == 0:
                conn.execute(insert(APP_CONFIG).values(key=key, value=value, updated_at=now))

    def load_config(self, base: ChaseConfig | None = None) -> ChaseConfig:
        """Configuration snapshot for one evaluation cycle."""
        return ChaseConfig.from_app_config(self.get_all(), base=base)
