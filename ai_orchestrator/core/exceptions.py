"""
Error taxonomy for request orchestration.

Pre-flight errors (validation, budget, backpressure, no provider) are raised
to the caller directly. ProviderError is recovered inside the worker through
retry, re-route and fallback and should not reach callers.
"""

from decimal import Decimal
from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestration failures."""


class ValidationError(OrchestratorError):
    """Raised when a request is malformed and cannot be normalized."""


class ProviderUnavailable(OrchestratorError):
    """Raised when no provider, including the offline fallback, can serve a task."""

    def __init__(self, message: str, task_type: Optional[str] = None):
        super().__init__(message)
        self.task_type = task_type


class BudgetExceeded(OrchestratorError):
    """Raised when a cost estimate would push spend past the configured cap."""

    def __init__(self, message: str, estimate: Decimal, spent: Decimal, cap: Decimal):
        super().__init__(message)
        self.estimate = estimate
        self.spent = spent
        self.cap = cap


class Backpressure(OrchestratorError):
    """Raised when the dispatch queue is full. Callers should retry later."""


class RequestTimeout(OrchestratorError):
    """Raised when a deadline passes while a request is queued or in flight."""


class RequestCancelled(OrchestratorError):
    """Raised to a caller that cancelled its own handle."""


class ProviderError(OrchestratorError):
    """Wrapped transport or remote failure from a provider adapter.

    Attributes:
        provider_id: Provider that failed
        transient: True when a retry against the same provider may succeed
        reason: Short machine-readable cause ("timeout", "rate_limited", ...)
        status_code: HTTP status when one was received
    """

    def __init__(
        self,
        message: str,
        provider_id: str,
        transient: bool,
        reason: str = "error",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider_id = provider_id
        self.transient = transient
        self.reason = reason
        self.status_code = status_code
