"""
Durable mirror of the usage ledger.

Persists ledger entries to an append-only SQLite table and answers
reporting queries over them.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageEntry

_COLUMNS = (
    "timestamp, provider, model, tokens, tokens_in, tokens_out, cost, "
    "project_id, user_id, task_type, terminal_state, request_id"
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_entry table if it doesn't exist.

    This creates an append-only ledger mirror.
    No UPDATE or DELETE operations should ever be performed on this table.
    Cost is stored as TEXT so Decimal amounts round-trip exactly.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                tokens INTEGER NOT NULL,
                tokens_in INTEGER NOT NULL DEFAULT 0,
                tokens_out INTEGER NOT NULL DEFAULT 0,
                cost TEXT NOT NULL,
                project_id TEXT,
                user_id TEXT,
                task_type TEXT,
                terminal_state TEXT NOT NULL,
                request_id TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_entry_project ON usage_entry(project_id)"
        )
        conn.commit()
    finally:
        conn.close()


def _entry_params(entry: UsageEntry) -> tuple:
    return (
        entry.timestamp.isoformat(),
        entry.provider,
        entry.model,
        entry.tokens,
        entry.tokens_in,
        entry.tokens_out,
        str(entry.cost),
        entry.project_id,
        entry.user_id,
        entry.task_type,
        entry.terminal_state,
        entry.request_id,
    )


def _row_to_entry(row) -> UsageEntry:
    return UsageEntry(
        timestamp=datetime.fromisoformat(row[0]),
        provider=row[1],
        model=row[2],
        tokens=row[3],
        tokens_in=row[4],
        tokens_out=row[5],
        cost=Decimal(row[6]),
        project_id=row[7],
        user_id=row[8],
        task_type=row[9],
        terminal_state=row[10],
        request_id=row[11],
    )


def insert_usage_entry(entry: UsageEntry, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage entry into the append-only mirror.

    Args:
        entry: The usage entry to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"INSERT INTO usage_entry ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            _entry_params(entry),
        )
        conn.commit()
    finally:
        conn.close()


def fetch_recent_usage_entries(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageEntry]:
    """Fetch recent usage entries, optionally filtered by provider and model.

    Returns entries in reverse chronological order (newest first).

    Args:
        provider: Optional filter for a specific provider
        model: Optional filter for a specific model
        limit: Maximum number of entries to return
        db_path: Path to SQLite database file

    Returns:
        List of usage entries ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_COLUMNS} FROM usage_entry"
        params: List[Union[str, int]] = []
        conditions = []

        if provider:
            conditions.append("provider = ?")
            params.append(provider)
        if model:
            conditions.append("model = ?")
            params.append(model)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [_row_to_entry(row) for row in cursor.fetchall()]
    finally:
        conn.close()


class SqliteUsageMirror:
    """Ledger sink that writes every appended entry to SQLite.

    Subscribe an instance to a ``UsageLedger`` to persist spend across
    process restarts. Each write opens, commits and closes its own
    connection, so it blocks the calling thread until the row is durable.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def __call__(self, entry: UsageEntry) -> None:
        insert_usage_entry(entry, self.db_path)

    def __repr__(self) -> str:
        return f"SqliteUsageMirror({self.db_path!r})"


class UsageRepository:
    """Reporting queries over the persisted mirror."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def get_entries_since(self, days: Optional[int] = None) -> List[UsageEntry]:
        """All persisted entries, optionally only those from the last ``days`` days."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_COLUMNS} FROM usage_entry"
            params: List[str] = []
            if days is not None:
                cutoff = datetime.now(timezone.utc) - timedelta(days=days)
                query += " WHERE timestamp >= ?"
                params.append(cutoff.isoformat())
            query += " ORDER BY id ASC"
            cursor = conn.execute(query, params)
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_usage_stats(self, days: Optional[int] = None) -> Dict[str, object]:
        """Totals and per-provider cost for the specified time period.

        Cost is summed in Python so the TEXT-stored Decimals stay exact.

        Args:
            days: Number of days to include, or all entries when None

        Returns:
            Dictionary with total_requests, total_cost, total_tokens,
            avg_cost and cost_by_provider
        """
        entries = self.get_entries_since(days)
        total_cost = sum((e.cost for e in entries), Decimal("0"))
        cost_by_provider: Dict[str, Decimal] = {}
        for entry in entries:
            cost_by_provider[entry.provider] = (
                cost_by_provider.get(entry.provider, Decimal("0")) + entry.cost
            )

        return {
            "total_requests": len(entries),
            "total_cost": total_cost,
            "total_tokens": sum(e.tokens for e in entries),
            "avg_cost": total_cost / len(entries) if entries else Decimal("0"),
            "cost_by_provider": cost_by_provider,
        }
