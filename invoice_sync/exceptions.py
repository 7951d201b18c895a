"""Exception hierarchy for the invoice sync pipeline.

Transient errors (``StoreUnavailableError``, ``ConcurrentModificationError``)
are the only ones the work queue retries. Everything else is final for the
event that raised it.
"""

from __future__ import annotations


class InvoiceSyncError(Exception):
    """Base class for all pipeline errors."""


class UnknownProviderError(InvoiceSyncError):
    """Raised when a provider id has no verifier or normalizer."""


class MalformedPayloadError(InvoiceSyncError):
    """Raised when a webhook body fails structural validation."""


class InvalidTransitionError(InvoiceSyncError):
    """Raised when an operator transition is not legal from the current state."""

    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid lifecycle transition: {current} -> {new}")
        self.current = current
        self.new = new


class InvoiceNotFoundError(InvoiceSyncError):
    """Raised when an operator addresses an invoice with no lifecycle record."""


class StoreError(InvoiceSyncError):
    """Base class for persistent store failures."""


class StoreUnavailableError(StoreError):
    """Database unreachable or statement timed out. Safe to retry."""


class ConcurrentModificationError(StoreError):
    """A lifecycle record changed between read and write. Safe to retry."""


class ChainReaderError(InvoiceSyncError):
    """RPC failure while reading logs for reconciliation."""


class BlockRangeTooLargeError(ChainReaderError):
    """The RPC provider refused the requested block range."""


TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    StoreUnavailableError,
    ConcurrentModificationError,
    TimeoutError,
)
