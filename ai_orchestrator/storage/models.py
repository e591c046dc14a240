"""
Data models for storage layer.

Defines the append-only usage record shared by the in-memory ledger and the
SQLite snapshot store.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class UsageOutcome(Enum):
    """Whether a provider attempt was billed."""
    SUCCESS = "success"
    FAILED_ATTEMPT = "failed_attempt"


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one provider attempt.

    Append-only: once written, records are never modified. Failed attempts
    are recorded with zero cost so retries can be told apart from successes.
    """
    timestamp: datetime
    period: str
    provider_id: str
    task_type: str
    tokens_estimate: int
    cost_estimate: Decimal
    outcome: UsageOutcome = UsageOutcome.SUCCESS
    request_id: Optional[str] = None
    latency_ms: float = 0.0

    def __post_init__(self):
        """Validate record values."""
        if self.tokens_estimate < 0:
            raise ValueError("tokens_estimate cannot be negative")
        if self.cost_estimate < 0:
            raise ValueError("cost_estimate cannot be negative")
        if self.outcome == UsageOutcome.FAILED_ATTEMPT and self.cost_estimate != 0:
            raise ValueError("failed attempts must carry zero cost")

    @property
    def billed(self) -> bool:
        return self.outcome == UsageOutcome.SUCCESS
