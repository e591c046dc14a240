"""
AI request orchestrator.

Routes AI task requests to remote or on-device providers with response
caching, single-flight deduplication, bounded dispatch and spend caps.
"""

from .core.exceptions import (
    Backpressure,
    BudgetExceeded,
    OrchestratorError,
    ProviderUnavailable,
    RequestCancelled,
    RequestTimeout,
    ValidationError,
)
from .core.orchestrator import OrchestratedResponse, Orchestrator, Outcome, RequestHandle
from .core.request import ContextKey, TaskType

__version__ = "0.1.0"

__all__ = [
    "Backpressure",
    "BudgetExceeded",
    "ContextKey",
    "OrchestratedResponse",
    "Orchestrator",
    "OrchestratorError",
    "Outcome",
    "ProviderUnavailable",
    "RequestCancelled",
    "RequestHandle",
    "RequestTimeout",
    "TaskType",
    "ValidationError",
]
