"""Chase policies: interval tiers and the eligibility chain.

All functions here are pure. The current instant is always passed in so
decisions are deterministic under test.
"""

from __future__ import annotations

import math
from datetime import UTC, date, datetime, timedelta

from .clock import as_utc
from .config import DEFAULT_INTERVAL_TIERS, ChaseConfig, IntervalTiers
from .dto import (
    DEFAULT_OPTIONS,
    ChaseDecision,
    ChaseOptions,
    ChaseState,
    Invoice,
    NextChaseInfo,
)

SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400


def required_interval_hours(
    days_overdue: int, tiers: IntervalTiers = DEFAULT_INTERVAL_TIERS
) -> int | None:
    """Minimum hours between chases for an invoice this far overdue.

    Tiers are checked highest first, so ``days_overdue=10`` yields 24 with the
    default tiers. Below the lowest tier there is no chase yet.
    """
    for min_days, hours in tiers:
        if days_overdue >= min_days:
            return hours
    return None


def compute_days_overdue(
    due_date: date, now: datetime, cached: int | None = None
) -> int:
    """Whole days overdue.

    A non-negative cached value from the billing sync wins; otherwise the
    value is derived from the due date (UTC midnight) and floored at 0.
    """
    if cached is not None and cached >= 0:
        return cached
    due_at = datetime(due_date.year, due_date.month, due_date.day, tzinfo=UTC)
    elapsed = (as_utc(now) - due_at).total_seconds()
    return max(0, math.floor(elapsed / SECONDS_PER_DAY))


def hours_since(moment: datetime, now: datetime) -> float:
    return (as_utc(now) - as_utc(moment)).total_seconds() / SECONDS_PER_HOUR


class ChasePolicies:
    """Eligibility rules bound to one configuration snapshot."""

    def __init__(self, config: ChaseConfig):
        """Initialize with configuration.

        Args:
            config: Chase configuration snapshot for this cycle
        """
        self.config = config

    def interval_for(self, days_overdue: int) -> int | None:
        return required_interval_hours(days_overdue, self.config.interval_tiers)

    def classify(
        self,
        invoice: Invoice,
        now: datetime,
        options: ChaseOptions = DEFAULT_OPTIONS,
    ) -> ChaseDecision:
        """Run the eligibility chain for one invoice.

        The checks short-circuit in a fixed order: terminal status, days
        overdue below the first tier, chasing disabled, paused, capped, and
        finally the re-chase interval.

        Args:
            invoice: Invoice snapshot read at the start of the evaluation
            now: Current timestamp
            options: Operator overrides (expedite)

        Returns:
            Tagged decision; ``decision.eligible`` is True only for ELIGIBLE
        """
        if invoice.is_terminal:
            return ChaseDecision(
                ChaseState.TERMINAL, 0, None, f"invoice is {invoice.status.value}"
            )

        days = compute_days_overdue(invoice.due_date, now, invoice.overdue_days)
        interval = self.interval_for(days)

        if interval is None:
            return ChaseDecision(
                ChaseState.NOT_YET_DUE, days, None, f"{days} days overdue is below the first tier"
            )

        if not self.config.enabled:
            return ChaseDecision(ChaseState.DISABLED, days, interval, "chasing is disabled")

        if invoice.chase_paused and not options.bypass_paused:
            return ChaseDecision(ChaseState.PAUSED, days, interval, "chasing is paused")

        if invoice.chase_count >= self.config.max_chase_count:
            return ChaseDecision(
                ChaseState.CAPPED,
                days,
                interval,
                f"chase count {invoice.chase_count} reached cap {self.config.max_chase_count}",
            )

        if invoice.last_chase_at is not None and not options.bypass_interval:
            elapsed = hours_since(invoice.last_chase_at, now)
            if elapsed < interval - self.config.tolerance_hours:
                return ChaseDecision(
                    ChaseState.NOT_YET_DUE,
                    days,
                    interval,
                    f"{elapsed:.1f}h since last chase, {interval}h required",
                )

        return ChaseDecision(ChaseState.ELIGIBLE, days, interval, "eligible")

    def next_chase_info(self, invoice: Invoice, now: datetime) -> NextChaseInfo:
        """Display-only projection of the next chase time.

        Never chased means "now". Pause, cap and terminal status are not
        considered; callers use this for dashboards, never for decisions.
        """
        days = compute_days_overdue(invoice.due_date, now, invoice.overdue_days)
        interval = self.interval_for(days)
        if interval is None:
            return NextChaseInfo()

        now = as_utc(now)
        if invoice.last_chase_at is None:
            next_at = now
        else:
            next_at = as_utc(invoice.last_chase_at) + timedelta(hours=interval)

        remaining_days = (next_at - now).total_seconds() / SECONDS_PER_DAY
        return NextChaseInfo(
            next_chase_at=next_at,
            days_until_next_chase=max(0, math.ceil(remaining_days)),
        )
