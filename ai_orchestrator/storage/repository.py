"""
Repository pattern for data access.

Persists usage ledger snapshots to an append-only SQLite table and reads
them back for historical reporting.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from ai_orchestrator.core.ledger import UsageLedger, UsageSummary, summarize

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageOutcome, UsageRecord

_INSERT_SQL = """
    INSERT INTO usage_record
    (timestamp, period, provider_id, task_type, tokens_estimate,
     cost_estimate, outcome, request_id, latency_ms)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_SQL = """
    SELECT timestamp, period, provider_id, task_type, tokens_estimate,
           cost_estimate, outcome, request_id, latency_ms
    FROM usage_record
"""


class UsageRepository:
    """Repository for reading persisted usage records.

    Provides a higher-level interface to the database operations, used by
    the CLI for reports across process restarts.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def get_records(
        self,
        period: Optional[str] = None,
        provider_id: Optional[str] = None,
        task_type: Optional[str] = None,
        limit: int = 1000,
    ) -> List[UsageRecord]:
        """Get persisted records with optional filtering, newest first."""
        return fetch_usage_records(
            period=period,
            provider_id=provider_id,
            task_type=task_type,
            limit=limit,
            db_path=self.db_path,
        )

    def get_usage_summary(self, period: Optional[str] = None) -> UsageSummary:
        """Summarize every persisted record for a billing period.

        Args:
            period: Billing period key, or None for all periods

        Returns:
            UsageSummary aggregated per provider and per task type
        """
        records = fetch_usage_records(period=period, limit=None, db_path=self.db_path)
        return summarize(records, period)

    def get_period_spend(self, period: str) -> Decimal:
        """Total billed cost persisted for a billing period.

        Used to restore a CostGuard's opening spend so the cap holds across
        process restarts.
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT cost_estimate FROM usage_record WHERE period = ? AND outcome = ?",
                (period, UsageOutcome.SUCCESS.value),
            )
            return sum((Decimal(row[0]) for row in cursor.fetchall()), Decimal("0"))
        finally:
            conn.close()

    def get_periods(self) -> List[str]:
        """Billing periods with persisted records, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT DISTINCT period FROM usage_record ORDER BY period DESC"
            )
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_record table if it doesn't exist.

    This creates an append-only ledger for immutable usage records.
    No UPDATE or DELETE operations should ever be performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                period TEXT NOT NULL,
                provider_id TEXT NOT NULL,
                task_type TEXT NOT NULL,
                tokens_estimate INTEGER NOT NULL,
                cost_estimate TEXT NOT NULL,
                outcome TEXT NOT NULL,
                request_id TEXT,
                latency_ms REAL NOT NULL DEFAULT 0
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_record_period ON usage_record (period)"
        )
        conn.commit()
    finally:
        conn.close()


def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage record into the append-only ledger.

    Args:
        record: The usage record to persist
        db_path: Path to SQLite database file
    """
    insert_usage_records([record], db_path)


def insert_usage_records(records: List[UsageRecord], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert multiple usage records atomically into the append-only ledger.

    All records are inserted in a single transaction to ensure consistency.

    Args:
        records: Usage records to persist
        db_path: Path to SQLite database file
    """
    if not records:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        conn.executemany(_INSERT_SQL, [_record_to_row(record) for record in records])
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_usage_records(
    period: Optional[str] = None,
    provider_id: Optional[str] = None,
    task_type: Optional[str] = None,
    limit: Optional[int] = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageRecord]:
    """Fetch persisted usage records, newest first.

    Args:
        period: Optional billing period filter
        provider_id: Optional provider filter
        task_type: Optional task type filter
        limit: Maximum number of records to return, None for all
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = _SELECT_SQL
        params: list = []
        conditions = []

        if period:
            conditions.append("period = ?")
            params.append(period)
        if provider_id:
            conditions.append("provider_id = ?")
            params.append(provider_id)
        if task_type:
            conditions.append("task_type = ?")
            params.append(task_type)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = conn.execute(query, params)
        return [_row_to_record(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def persist_ledger_snapshot(
    ledger: UsageLedger,
    cursor: int = 0,
    db_path: str = DEFAULT_DB_PATH,
) -> Tuple[int, int]:
    """Append ledger records added since cursor to the database.

    Args:
        ledger: In-memory usage ledger
        cursor: Value returned by the previous snapshot (0 for the first)
        db_path: Path to SQLite database file

    Returns:
        (records written, cursor for the next snapshot)
    """
    records, next_cursor = ledger.records_since(cursor)
    insert_usage_records(records, db_path)
    return len(records), next_cursor


def _record_to_row(record: UsageRecord) -> tuple:
    return (
        record.timestamp.isoformat(),
        record.period,
        record.provider_id,
        record.task_type,
        record.tokens_estimate,
        str(record.cost_estimate),
        record.outcome.value,
        record.request_id,
        record.latency_ms,
    )


def _row_to_record(row) -> UsageRecord:
    return UsageRecord(
        timestamp=datetime.fromisoformat(row[0]),
        period=row[1],
        provider_id=row[2],
        task_type=row[3],
        tokens_estimate=row[4],
        cost_estimate=Decimal(row[5]),
        outcome=UsageOutcome(row[6]),
        request_id=row[7],
        latency_ms=row[8],
    )
