"""Outward-facing chase operations used by the API and the CLI."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from backend.core.config import Settings, settings as default_settings

from .billing import BillingSync, SyncResult, facts_from_provider_invoice
from .clock import Clock, system_clock
from .config import ChaseConfig
from .content import ContentGenerator, build_content_generator
from .delivery import ChaseMailer, DeliverySender
from .dto import (
    DEFAULT_OPTIONS,
    EXPEDITE_OPTIONS,
    BatchResult,
    ChaseEmailStatus,
    ChaseOptions,
    ChaseOutcome,
    ChaseRecord,
    Invoice,
    NextChaseInfo,
)
from .engine import ChaseEngine
from .policies import ChasePolicies, compute_days_overdue
from .scheduler import BatchScheduler
from .store import AppConfigStore, ChaseRecordStore, InvoiceStore


@lru_cache(maxsize=1)
def _get_engine(database_url: str) -> Engine:
    """Create (and cache) the SQLAlchemy engine for the chaser tables."""
    return create_engine(database_url, future=True, pool_pre_ping=True)


class ChaseService:
    """Wires the stores, the decision engine and the scheduler together."""

    def __init__(
        self,
        engine: Engine,
        generator: ContentGenerator,
        sender: DeliverySender,
        clock: Clock = system_clock,
        base_config: ChaseConfig | None = None,
        batch_limit: int | None = None,
    ):
        self.clock = clock
        self.base_config = base_config or ChaseConfig.from_settings()
        self.generator = generator
        self.invoices = InvoiceStore(engine)
        self.records = ChaseRecordStore(engine)
        self.app_config = AppConfigStore(engine)
        self.chase_engine = ChaseEngine(self.invoices, generator, sender, clock=clock)
        self.scheduler = BatchScheduler(
            self.invoices,
            self.app_config,
            self.chase_engine,
            base_config=self.base_config,
            clock=clock,
            batch_limit=batch_limit,
        )
        self.billing = BillingSync(self.invoices, clock=clock)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(
        cls, source: Settings | None = None, engine: Engine | None = None
    ) -> "ChaseService":
        source = source or default_settings
        return cls(
            engine or _get_engine(source.database_url),
            build_content_generator(source),
            ChaseMailer.from_settings(source),
            base_config=ChaseConfig.from_settings(source),
            batch_limit=source.CHASE_BATCH_LIMIT,
        )

    def load_config(self) -> ChaseConfig:
        return self.app_config.load_config(base=self.base_config)

    def evaluate_one(
        self, invoice_id: int, options: ChaseOptions = DEFAULT_OPTIONS
    ) -> ChaseOutcome:
        """Evaluate a single invoice; every error reaches the caller.

        Raises:
            InvoiceNotFoundError: Unknown invoice id
            ChaseDeliveryError: Content generation or delivery failed
            StoreUnavailableError: The store could not be reached
        """
        invoice = self.invoices.get(invoice_id)
        return self.chase_engine.evaluate(invoice, self.load_config(), options)

    def expedite(self, invoice_id: int) -> ChaseOutcome:
        """Chase now, ignoring pause and interval but never the cap."""
        return self.evaluate_one(invoice_id, EXPEDITE_OPTIONS)

    def run_batch(self) -> BatchResult:
        return self.scheduler.run_batch()

    def pause(self, invoice_id: int, paused: bool = True) -> Invoice:
        invoice = self.invoices.set_paused(invoice_id, paused, self.clock())
        self.logger.info(
            "chase_paused" if paused else "chase_resumed", extra={"invoice_id": invoice_id}
        )
        return invoice

    def next_chase_info(self, invoice: Invoice) -> NextChaseInfo:
        return ChasePolicies(self.load_config()).next_chase_info(invoice, self.clock())

    def list_overdue(self, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        """Chase candidates with their next-chase projection, oldest due first."""
        now = self.clock()
        policies = ChasePolicies(self.load_config())
        items = []
        for invoice in self.invoices.list_candidates(now.date(), limit=limit, offset=offset):
            item = invoice.to_dict()
            item["days_overdue"] = compute_days_overdue(
                invoice.due_date, now, invoice.overdue_days
            )
            item.update(policies.next_chase_info(invoice, now).to_dict())
            items.append(item)
        return items

    def chase_history(self, invoice_id: int) -> list[ChaseRecord]:
        self.invoices.get(invoice_id)
        return self.records.list_for_invoice(invoice_id)

    def preview_next(self, invoice_id: int) -> dict[str, Any]:
        """Generate the next chaser's content without sending or recording it.

        Raises:
            InvoiceNotFoundError: Unknown invoice id
            ContentGenerationError: The generator failed
        """
        invoice = self.invoices.get(invoice_id)
        days = compute_days_overdue(invoice.due_date, self.clock(), invoice.overdue_days)
        email = self.generator.generate(invoice, days)
        return {
            "invoice_id": invoice.id,
            "overdue_days": days,
            "subject": email.subject,
            "body": email.body,
            **self.next_chase_info(invoice).to_dict(),
        }

    def status(self) -> dict[str, Any]:
        config = self.load_config()
        candidates = self.invoices.list_candidates(self.clock().date())
        return {
            "config": config.to_dict(),
            "candidates": len(candidates),
            "paused": sum(1 for invoice in candidates if invoice.chase_paused),
            "capped": sum(
                1 for invoice in candidates if invoice.chase_count >= config.max_chase_count
            ),
        }

    def dashboard_stats(self) -> dict[str, Any]:
        """Headline numbers for the credit control dashboard."""
        summary = self.invoices.overdue_summary(self.clock().date())
        return {
            "total_invoices": summary["total_invoices"],
            "overdue_invoices": summary["overdue_invoices"],
            "total_amount_overdue": str(summary["total_amount_overdue"]),
            "pending_chases": self.records.count_all_by_status(ChaseEmailStatus.PENDING),
        }

    def sync_billing(self, objects: Iterable[Mapping[str, Any]]) -> SyncResult:
        """Apply a batch of provider invoice objects to the invoice store.

        Objects that cannot be mapped are reported in ``errors``; the rest
        are still applied.
        """
        now = self.clock()
        snapshots = []
        errors = []
        for obj in objects:
            if not isinstance(obj, Mapping):
                errors.append(f"?: expected an invoice object, got {type(obj).__name__}")
                continue
            try:
                snapshots.append(facts_from_provider_invoice(obj, now))
            except (KeyError, TypeError, ValueError) as e:
                errors.append(f"{obj.get('id', '?')}: {e}")
        result = self.billing.sync(snapshots)
        result.errors[:0] = errors
        return result
