"""
Usage ledger.

In-memory append-only sequence of UsageRecords with per-provider and
per-task summaries. Snapshots for historical reporting are taken with
records_since() and persisted by the storage layer.
"""

import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ai_orchestrator.storage.models import UsageOutcome, UsageRecord


@dataclass
class UsageBucket:
    """Aggregated usage for one provider or task type."""
    requests: int = 0
    failed_attempts: int = 0
    tokens: int = 0
    cost: Decimal = Decimal("0")

    def add(self, record: UsageRecord) -> None:
        if record.outcome == UsageOutcome.SUCCESS:
            self.requests += 1
            self.tokens += record.tokens_estimate
            self.cost += record.cost_estimate
        else:
            self.failed_attempts += 1


@dataclass
class UsageSummary:
    """Usage totals for a billing period."""
    period: Optional[str]
    per_provider: Dict[str, UsageBucket] = field(default_factory=dict)
    per_task: Dict[str, UsageBucket] = field(default_factory=dict)
    total_cost: Decimal = Decimal("0")
    total_requests: int = 0
    failed_attempts: int = 0
    average_latency_ms: float = 0.0


def summarize(records: List[UsageRecord], period: Optional[str] = None) -> UsageSummary:
    """Aggregate records into a UsageSummary.

    Average latency covers billed (successful) attempts only.
    """
    summary = UsageSummary(period=period)
    latency_total = 0.0
    for record in records:
        summary.per_provider.setdefault(record.provider_id, UsageBucket()).add(record)
        summary.per_task.setdefault(record.task_type, UsageBucket()).add(record)
        if record.billed:
            summary.total_requests += 1
            summary.total_cost += record.cost_estimate
            latency_total += record.latency_ms
        else:
            summary.failed_attempts += 1

    if summary.total_requests:
        summary.average_latency_ms = latency_total / summary.total_requests
    return summary


class UsageLedger:
    """Thread-safe append-only record store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: List[UsageRecord] = []

    def append(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def records(self, period: Optional[str] = None) -> List[UsageRecord]:
        """Copy of the records, optionally limited to one billing period."""
        with self._lock:
            if period is None:
                return list(self._records)
            return [r for r in self._records if r.period == period]

    def records_since(self, cursor: int = 0) -> Tuple[List[UsageRecord], int]:
        """Records appended after cursor, and the cursor to pass next time."""
        if cursor < 0:
            raise ValueError("cursor cannot be negative")
        with self._lock:
            return list(self._records[cursor:]), len(self._records)

    def summary(self, period: Optional[str] = None) -> UsageSummary:
        return summarize(self.records(period), period)
