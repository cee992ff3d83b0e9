"""Credit control chaser.

Decides when overdue invoices get a reminder email and records every attempt.
"""

from .config import ChaseConfig
from .dto import (
    BatchResult,
    BillingFacts,
    ChaseEmailStatus,
    ChaseOptions,
    ChaseOutcome,
    ChaseRecord,
    ChaseState,
    Invoice,
    InvoiceStatus,
    NextChaseInfo,
)
from .engine import ChaseEngine
from .errors import (
    ChaseDeliveryError,
    ChaseError,
    ContentGenerationError,
    DeliveryError,
    InvoiceNotFoundError,
    StoreUnavailableError,
)
from .policies import ChasePolicies, required_interval_hours
from .scheduler import BatchScheduler
from .service import ChaseService

__version__ = "1.0.0"
__all__ = [
    "BatchResult",
    "BatchScheduler",
    "BillingFacts",
    "ChaseConfig",
    "ChaseDeliveryError",
    "ChaseEmailStatus",
    "ChaseEngine",
    "ChaseError",
    "ChaseOptions",
    "ChaseOutcome",
    "ChasePolicies",
    "ChaseRecord",
    "ChaseService",
    "ChaseState",
    "ContentGenerationError",
    "DeliveryError",
    "Invoice",
    "InvoiceNotFoundError",
    "InvoiceStatus",
    "NextChaseInfo",
    "StoreUnavailableError",
    "required_interval_hours",
]
