"""Exception hierarchy for the chase engine and its collaborators."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .dto import ChaseRecord


class ChaseError(Exception):
    """Base class for chase errors."""


class InvoiceNotFoundError(ChaseError):
    def __init__(self, invoice_id):
        super().__init__(f"Invoice {invoice_id} not found")
        self.invoice_id = invoice_id


class StoreUnavailableError(ChaseError):
    """The invoice store could not be reached; fatal for the current batch."""


class ContentGenerationError(ChaseError):
    """The content generator failed or returned an unusable draft."""


class DeliveryError(ChaseError):
    """The delivery sender failed to hand the email to the provider."""


class ChaseDeliveryError(ChaseError):
    """A chase attempt failed after it was claimed.

    The attempt's record has been finalised as ``failed`` and the invoice's
    chase fields were left untouched, so the next cycle may retry.
    """

    def __init__(self, message: str, record: "ChaseRecord | None" = None):
        super().__init__(message)
        self.record = record
