"""Chase decision engine.

Decides for one invoice whether a chase is due and, when it is, claims the
invoice, generates and delivers the email, and commits the result with a
conditional write.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from uuid import uuid4

from backend.core.observability.metrics import (
    increment_chase_conflicts,
    increment_chase_failed,
    increment_chase_sent,
    increment_chase_skipped,
)

from .clock import Clock, system_clock
from .config import ChaseConfig
from .content import ContentGenerator
from .delivery import DeliverySender
from .dto import DEFAULT_OPTIONS, ChaseOptions, ChaseOutcome, GeneratedEmail, Invoice
from .errors import ChaseDeliveryError
from .policies import ChasePolicies
from .store import InvoiceStore


def _new_token() -> str:
    return uuid4().hex


class ChaseEngine:
    """Evaluates and commits chases for single invoices."""

    def __init__(
        self,
        invoices: InvoiceStore,
        generator: ContentGenerator,
        sender: DeliverySender,
        clock: Clock = system_clock,
        token_factory: Callable[[], str] = _new_token,
    ):
        """Initialize the engine.

        Args:
            invoices: Invoice store providing claim and commit writes
            generator: Content generator collaborator
            sender: Delivery sender collaborator
            clock: Time source
            token_factory: Produces claim tokens
        """
        self.invoices = invoices
        self.generator = generator
        self.sender = sender
        self.clock = clock
        self.token_factory = token_factory
        self.logger = logging.getLogger(__name__)

    def evaluate(
        self,
        invoice: Invoice,
        config: ChaseConfig,
        options: ChaseOptions = DEFAULT_OPTIONS,
    ) -> ChaseOutcome:
        """Evaluate one invoice snapshot and send a chase if it is due.

        Args:
            invoice: Snapshot read at the start of the evaluation
            config: Configuration snapshot for this cycle
            options: Operator overrides; the cap is never bypassed

        Returns:
            ChaseOutcome; ``sent`` is True only when the chase was committed

        Raises:
            ChaseDeliveryError: Content generation or delivery failed. The
                record is finalised ``failed`` and the invoice is unchanged.
            StoreUnavailableError: The store could not be reached
        """
        now = self.clock()
        decision = ChasePolicies(config).classify(invoice, now, options)
        days = decision.days_overdue

        if not decision.eligible:
            self.logger.debug(
                "chase_skipped",
                extra={
                    "invoice_id": invoice.id,
                    "state": decision.state.value,
                    "reason": decision.reason,
                },
            )
            increment_chase_skipped(decision.state.value)
            return ChaseOutcome(False, decision.state, days, decision.reason)

        claim = self.invoices.claim(
            invoice, days, self.token_factory(), now, config.claim_ttl_seconds
        )
        if claim is None:
            return self._conflict(invoice, decision.state, days, "claimed by another evaluation")

        email: GeneratedEmail | None = None
        try:
            email = self.generator.generate(invoice, days)
            receipt = self.sender.send(invoice.recipient, email.subject, email.body)
        except Exception as exc:
            record = self.invoices.release_failed(claim, str(exc), self.clock(), email)
            increment_chase_failed()
            self.logger.warning(
                "chase_failed",
                extra={
                    "invoice_id": invoice.id,
                    "record_id": record.id,
                    "overdue_days": days,
                    "error": str(exc),
                },
            )
            raise ChaseDeliveryError(
                f"Chase for invoice {invoice.id} failed: {exc}", record=record
            ) from exc

        record = self.invoices.commit_sent(invoice, claim, email, receipt, self.clock())
        if record is None:
            return self._conflict(invoice, decision.state, days, "commit rejected")

        increment_chase_sent()
        self.logger.info(
            "chase_sent",
            extra={
                "invoice_id": invoice.id,
                "record_id": record.id,
                "overdue_days": days,
                "chase_count": invoice.chase_count + 1,
                "sent_to": receipt.recipient,
                "rerouted": receipt.rerouted,
            },
        )
        return ChaseOutcome(True, decision.state, days, "sent", record=record)

    def _conflict(self, invoice: Invoice, state, days: int, reason: str) -> ChaseOutcome:
        self.logger.debug("chase_conflict", extra={"invoice_id": invoice.id, "reason": reason})
        increment_chase_conflicts()
        return ChaseOutcome(False, state, days, reason, conflict=True)
