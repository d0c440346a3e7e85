"""Exceptions that fail a whole detection run.

Per-record and per-pattern problems are handled inside the pipeline and never
raise; only unreachable sources surface here. Each exception carries a stable
error_code and a message that is safe to show to end users.
"""

from typing import Any, Dict, Optional


class SubscriptionDetectionError(Exception):
    """Base exception for detection runs.

    Attributes:
        error_code: Stable identifier for the failure class
        user_message: Text that can be returned to callers
        details: Additional context (for logging only)
    """

    error_code = "DETECTION_FAILED"
    user_message = "Subscription detection could not be completed."

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(self.error_code)


class TransactionSourceError(SubscriptionDetectionError):
    """Raised when the user's transactions cannot be loaded."""

    error_code = "TRANSACTIONS_UNAVAILABLE"
    user_message = "Transaction history is currently unavailable."


class CatalogUnavailableError(SubscriptionDetectionError):
    """Raised when the known-merchant catalog cannot be loaded."""

    error_code = "CATALOG_UNAVAILABLE"
    user_message = "The merchant catalog is currently unavailable."
