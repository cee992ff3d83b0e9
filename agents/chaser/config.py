"""Configuration snapshot for chase evaluation.

Environment defaults come from ``backend.core.config.settings``; rows of the
``app_config`` table override them once per evaluation cycle. The resulting
``ChaseConfig`` is immutable for the duration of that cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from backend.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# (min_days_overdue, interval_hours), highest tier first
IntervalTiers = tuple[tuple[int, int], ...]

DEFAULT_INTERVAL_TIERS: IntervalTiers = ((10, 24), (7, 48), (5, 72))

APP_CONFIG_ENABLED = "chase_enabled"
APP_CONFIG_MAX_COUNT = "max_chase_count"
APP_CONFIG_TIERS = "chase_interval_tiers"


def parse_interval_tiers(raw: str) -> IntervalTiers:
    """Parse a ``days:hours`` CSV into tiers sorted by descending days.

    Args:
        raw: e.g. ``"10:24,7:48,5:72"``

    Returns:
        Tuple of ``(min_days, hours)`` pairs

    Raises:
        ValueError: If an entry is malformed, negative, or duplicated
    """
    tiers: dict[int, int] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        days_text, sep, hours_text = chunk.partition(":")
        if not sep:
            raise ValueError(f"Invalid interval tier {chunk!r}, expected days:hours")
        days, hours = int(days_text), int(hours_text)
        if days < 0 or hours <= 0:
            raise ValueError(f"Invalid interval tier {chunk!r}")
        if days in tiers:
            raise ValueError(f"Duplicate interval tier for {days} days")
        tiers[days] = hours
    if not tiers:
        raise ValueError("At least one interval tier is required")
    return tuple(sorted(tiers.items(), reverse=True))


def format_interval_tiers(tiers: IntervalTiers) -> str:
    return ",".join(f"{days}:{hours}" for days, hours in tiers)


def _parse_flag(value: str) -> bool:
    # Anything but an explicit "false" keeps chasing on
    return value.strip().lower() != "false"


@dataclass(frozen=True)
class ChaseConfig:
    """Immutable chase configuration for one evaluation cycle."""

    enabled: bool = True
    max_chase_count: int = 4
    interval_tiers: IntervalTiers = DEFAULT_INTERVAL_TIERS
    tolerance_hours: float = 0.01
    claim_ttl_seconds: int = 900

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "ChaseConfig":
        """Build defaults from environment settings."""
        source = source or default_settings
        return cls(
            enabled=source.CHASE_ENABLED,
            max_chase_count=source.CHASE_MAX_COUNT,
            interval_tiers=parse_interval_tiers(source.CHASE_INTERVAL_TIERS),
            tolerance_hours=source.CHASE_TOLERANCE_HOURS,
            claim_ttl_seconds=source.CHASE_CLAIM_TTL_S,
        )

    @classmethod
    def from_app_config(
        cls, values: Mapping[str, str], base: "ChaseConfig | None" = None
    ) -> "ChaseConfig":
        """Overlay ``app_config`` rows on a base configuration.

        Malformed values are ignored with a warning so that one bad row
        cannot stop the whole chase cycle.
        """
        config = base or cls.from_settings()
        return config.with_app_config(values)

    def with_app_config(self, values: Mapping[str, str]) -> "ChaseConfig":
        changes: dict[str, Any] = {}

        if APP_CONFIG_ENABLED in values:
            changes["enabled"] = _parse_flag(values[APP_CONFIG_ENABLED])

        if APP_CONFIG_MAX_COUNT in values:
            try:
                max_count = int(values[APP_CONFIG_MAX_COUNT])
                if max_count < 0:
                    raise ValueError("negative")
                changes["max_chase_count"] = max_count
            except ValueError:
                logger.warning(
                    "app_config_invalid",
                    extra={"key": APP_CONFIG_MAX_COUNT, "value": values[APP_CONFIG_MAX_COUNT]},
                )

        if APP_CONFIG_TIERS in values:
            try:
                changes["interval_tiers"] = parse_interval_tiers(values[APP_CONFIG_TIERS])
            except ValueError:
                logger.warning(
                    "app_config_invalid",
                    extra={"key": APP_CONFIG_TIERS, "value": values[APP_CONFIG_TIERS]},
                )

        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "max_chase_count": self.max_chase_count,
            "interval_tiers": format_interval_tiers(self.interval_tiers),
            "tolerance_hours": self.tolerance_hours,
            "claim_ttl_seconds": self.claim_ttl_seconds,
        }
