"""
In-memory usage ledger.

The single source of truth for spend. All derived figures are computed
from the entries on demand instead of being kept as running counters.
"""

import threading
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from ..core.errors import ValidationError
from .models import AggregateStats, ProviderBreakdown, UsageEntry

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")

UsageSink = Callable[[UsageEntry], None]


def validate_entry(entry: UsageEntry) -> None:
    """Reject entries that must never reach the ledger.

    Raises:
        ValidationError: If provider/model are blank, amounts negative or
            the timestamp lacks a timezone
    """
    if not isinstance(entry, UsageEntry):
        raise ValidationError(f"Expected UsageEntry, got {type(entry).__name__}")
    if not entry.provider or not entry.provider.strip():
        raise ValidationError("provider is required and cannot be empty")
    if not entry.model or not entry.model.strip():
        raise ValidationError("model is required and cannot be empty")
    if not isinstance(entry.tokens, int) or entry.tokens < 0:
        raise ValidationError(f"tokens must be a non-negative integer, got {entry.tokens!r}")
    if entry.tokens_in < 0 or entry.tokens_out < 0:
        raise ValidationError("tokens_in and tokens_out must be non-negative")
    if not entry.cost.is_finite() or entry.cost < 0:
        raise ValidationError(f"cost must be non-negative, got {entry.cost}")
    if not isinstance(entry.timestamp, datetime):
        raise ValidationError("timestamp must be a datetime")
    if entry.timestamp.tzinfo is None or entry.timestamp.utcoffset() is None:
        raise ValidationError("timestamp must be timezone-aware")


class UsageLedger:
    """Append-only record of every billable unit of consumption.

    Appends and reads are serialized through one lock, so a reader sees
    the ledger either just before or just after a concurrent append.
    """

    def __init__(self):
        self._entries: List[UsageEntry] = []
        self._lock = threading.Lock()
        self._sinks: List[UsageSink] = []

    def subscribe(self, sink: UsageSink) -> None:
        """Register a callable that receives every appended entry.

        Sinks run synchronously inside ``log``, on the caller's thread. In
        the orchestrator that is the event loop at a request's terminal
        state, so a sink doing blocking I/O holds the loop for the length
        of that write. A failing sink is logged and never undoes the
        append.
        """
        self._sinks.append(sink)

    def log(self, entry: UsageEntry) -> None:
        """Append a usage entry.

        Args:
            entry: The entry to record

        Raises:
            ValidationError: If the entry is malformed; nothing is recorded
        """
        validate_entry(entry)
        with self._lock:
            self._entries.append(entry)

        logger.info(
            "usage_logged",
            provider=entry.provider,
            model=entry.model,
            tokens=entry.tokens,
            cost=str(entry.cost),
            project_id=entry.project_id,
            terminal_state=entry.terminal_state,
        )

        for sink in self._sinks:
            try:
                sink(entry)
            except Exception:
                # The in-memory entry stays authoritative
                logger.exception("usage_sink_failed", sink=repr(sink))

    def restore(self, entries: Iterable[UsageEntry]) -> int:
        """Load previously persisted entries without notifying sinks.

        All entries are validated before any is appended.

        Returns:
            Number of entries loaded
        """
        entries = list(entries)
        for entry in entries:
            validate_entry(entry)
        with self._lock:
            self._entries.extend(entries)
        return len(entries)

    def _snapshot(self) -> List[UsageEntry]:
        with self._lock:
            return list(self._entries)

    def get_total_cost(self) -> Decimal:
        return sum((e.cost for e in self._snapshot()), ZERO)

    def get_cost_by_provider(self, provider: str) -> Decimal:
        return sum((e.cost for e in self._snapshot() if e.provider == provider), ZERO)

    def get_cost_by_model(self, model: str) -> Decimal:
        return sum((e.cost for e in self._snapshot() if e.model == model), ZERO)

    def get_cost_for_period(self, start: datetime, end: datetime) -> Decimal:
        """Sum of cost for entries with ``start <= timestamp <= end``."""
        return sum(
            (e.cost for e in self._snapshot() if start <= e.timestamp <= end),
            ZERO,
        )

    def get_scope_cost(
        self,
        project_id: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Decimal:
        """Spend attributed to a project and/or user, optionally from ``since``."""
        total = ZERO
        for entry in self._snapshot():
            if project_id is not None and entry.project_id != project_id:
                continue
            if user_id is not None and entry.user_id != user_id:
                continue
            if since is not None and entry.timestamp < since:
                continue
            total += entry.cost
        return total

    def get_daily_cost(self, day: Optional[date] = None) -> Decimal:
        """Spend across all scopes for one UTC calendar day."""
        day = day or datetime.now(timezone.utc).date()
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1) - timedelta(microseconds=1)
        return self.get_cost_for_period(start, end)

    def get_stats(self) -> AggregateStats:
        """Compute aggregate statistics over the current entries."""
        entries = self._snapshot()
        total_cost = ZERO
        total_tokens = 0
        cost_by_provider: Dict[str, Decimal] = {}
        cost_by_model: Dict[str, Decimal] = {}

        for entry in entries:
            total_cost += entry.cost
            total_tokens += entry.tokens
            cost_by_provider[entry.provider] = cost_by_provider.get(entry.provider, ZERO) + entry.cost
            cost_by_model[entry.model] = cost_by_model.get(entry.model, ZERO) + entry.cost

        return AggregateStats(
            total_cost=total_cost,
            total_entries=len(entries),
            total_tokens=total_tokens,
            avg_cost_per_entry=total_cost / len(entries) if entries else ZERO,
            cost_by_provider=cost_by_provider,
            cost_by_model=cost_by_model,
        )

    def _breakdown(self, key: Callable[[UsageEntry], str]) -> Dict[str, ProviderBreakdown]:
        result: Dict[str, ProviderBreakdown] = {}
        for entry in self._snapshot():
            bucket = result.setdefault(key(entry), ProviderBreakdown())
            bucket.tokens += entry.tokens
            bucket.cost += entry.cost
            bucket.calls += 1
        return result

    def get_provider_breakdown(self) -> Dict[str, ProviderBreakdown]:
        return self._breakdown(lambda e: e.provider)

    def get_model_breakdown(self) -> Dict[str, ProviderBreakdown]:
        """Breakdown keyed by ``provider/model``."""
        return self._breakdown(lambda e: f"{e.provider}/{e.model}")

    def get_logs(self) -> List[UsageEntry]:
        """All entries in insertion order. The returned list is a copy."""
        return self._snapshot()

    def clear(self) -> None:
        """Remove every entry. Administrative/test use only."""
        with self._lock:
            self._entries.clear()
        logger.warning("ledger_cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
