"""
Unit tests for the SQLite ledger mirror.

Tests schema creation, entry insertion, retrieval and reporting queries.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from spend_gateway.storage.db import get_connection
from spend_gateway.storage.ledger import UsageLedger
from spend_gateway.storage.models import UsageEntry
from spend_gateway.storage.repository import (
    SqliteUsageMirror,
    UsageRepository,
    fetch_recent_usage_entries,
    initialize_schema,
    insert_usage_entry,
)


def make_entry(provider="grok", model="grok-2-latest", cost="0.003", timestamp=None, **kwargs):
    return UsageEntry(
        provider=provider,
        model=model,
        tokens=700,
        cost=Decimal(cost),
        timestamp=timestamp or datetime.now(timezone.utc),
        tokens_in=500,
        tokens_out=200,
        **kwargs
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify table is created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("""
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name='usage_entry'
                """)
                assert len(cursor.fetchall()) == 1

                cursor = conn.execute("PRAGMA table_info(usage_entry)")
                columns = {row[1]: row[2] for row in cursor.fetchall()}
            finally:
                conn.close()

            expected = {
                "id", "timestamp", "provider", "model", "tokens", "tokens_in",
                "tokens_out", "cost", "project_id", "user_id", "task_type",
                "terminal_state", "request_id",
            }
            assert set(columns) == expected
            assert columns["cost"] == "TEXT"

    def test_schema_is_idempotent(self):
        """Verify initializing twice is harmless."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)


class TestEntryPersistence:
    """Test inserting and fetching entries."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)

    def test_insert_and_fetch_round_trip(self):
        """Every field survives the mirror, Decimal cost included."""
        entry = make_entry(
            cost="0.000123",
            project_id="p1",
            user_id="u1",
            task_type="research",
            terminal_state="cancelled",
            request_id="abc",
        )
        insert_usage_entry(entry, self.db_path)

        fetched = fetch_recent_usage_entries(db_path=self.db_path)
        assert fetched == [entry]
        assert isinstance(fetched[0].cost, Decimal)

    def test_fetch_filters_and_order(self):
        """Entries come back newest first, filtered by provider and model."""
        now = datetime.now(timezone.utc)
        insert_usage_entry(make_entry(timestamp=now - timedelta(minutes=2)), self.db_path)
        insert_usage_entry(make_entry(timestamp=now - timedelta(minutes=1), model="grok-2-mini"), self.db_path)
        insert_usage_entry(make_entry(provider="claude", model="claude-3-haiku-20240307", timestamp=now),
                           self.db_path)

        fetched = fetch_recent_usage_entries(db_path=self.db_path)
        assert [e.provider for e in fetched] == ["claude", "grok", "grok"]

        grok = fetch_recent_usage_entries(provider="grok", db_path=self.db_path)
        assert len(grok) == 2
        mini = fetch_recent_usage_entries(provider="grok", model="grok-2-mini", db_path=self.db_path)
        assert len(mini) == 1
        assert len(fetch_recent_usage_entries(limit=1, db_path=self.db_path)) == 1

    def test_mirror_subscribed_to_ledger(self):
        """Entries appended to the ledger reach SQLite."""
        ledger = UsageLedger()
        ledger.subscribe(SqliteUsageMirror(self.db_path))

        ledger.log(make_entry(project_id="p1"))
        ledger.log(make_entry(provider="claude", model="claude-3-haiku-20240307"))

        persisted = UsageRepository(self.db_path).get_entries_since()
        assert persisted == ledger.get_logs()

    def test_restore_from_mirror(self):
        """A fresh ledger can be seeded from persisted spend."""
        insert_usage_entry(make_entry(cost="1.25", project_id="p1"), self.db_path)
        ledger = UsageLedger()
        ledger.restore(UsageRepository(self.db_path).get_entries_since())
        assert ledger.get_scope_cost(project_id="p1") == Decimal("1.25")


class TestUsageRepository:
    """Test reporting queries."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repo = UsageRepository(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)

    def test_empty_stats(self):
        stats = self.repo.get_usage_stats()
        assert stats["total_requests"] == 0
        assert stats["total_cost"] == Decimal("0")
        assert stats["avg_cost"] == Decimal("0")
        assert stats["cost_by_provider"] == {}

    def test_stats(self):
        """Totals are exact Decimal sums."""
        for _ in range(3):
            insert_usage_entry(make_entry(cost="0.1"), self.db_path)
        insert_usage_entry(make_entry(provider="claude", model="claude-3-haiku-20240307", cost="0.2"),
                           self.db_path)

        stats = self.repo.get_usage_stats()
        assert stats["total_requests"] == 4
        assert stats["total_cost"] == Decimal("0.5")
        assert stats["total_tokens"] == 2800
        assert stats["avg_cost"] == Decimal("0.125")
        assert stats["cost_by_provider"] == {"grok": Decimal("0.3"), "claude": Decimal("0.2")}

    def test_days_filter(self):
        """Only entries inside the window are counted."""
        now = datetime.now(timezone.utc)
        insert_usage_entry(make_entry(timestamp=now - timedelta(days=10)), self.db_path)
        insert_usage_entry(make_entry(timestamp=now - timedelta(hours=1)), self.db_path)

        assert self.repo.get_usage_stats(days=7)["total_requests"] == 1
        assert self.repo.get_usage_stats()["total_requests"] == 2
