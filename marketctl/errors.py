"""Error taxonomy for marketplace operations."""

from datetime import datetime
from typing import Optional


class MarketError(Exception):
    """Base class for errors reported to callers."""


class NotFoundError(MarketError):
    pass


class ForbiddenError(MarketError):
    pass


class InvalidStateError(MarketError):
    """Stale data, double submit or a lost race."""


class DuplicateBidError(InvalidStateError):
    pass


class InvalidRequestError(MarketError):
    pass


class CapacityExceededError(MarketError):
    """Usage quota exhausted. ``retry_at`` is set when waiting helps."""

    def __init__(self, message: str, retry_at: Optional[datetime] = None):
        super().__init__(message)
        self.retry_at = retry_at


class TransientError(MarketError):
    """Storage stayed busy after internal retries. Safe to retry later."""

    def __init__(self, message: str = "The marketplace is busy. Please try again later."):
        super().__init__(message)


class ConflictError(Exception):
    """Version stamp mismatch or held lock at commit time. Internal only."""
