"""
Data models for storage layer.

Defines the usage ledger entry and the figures derived from it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from ..core.errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value) -> Decimal:
    """Coerce a monetary amount to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError(f"Invalid monetary amount: {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid monetary amount: {value!r}")


@dataclass(frozen=True)
class UsageEntry:
    """Immutable record of one generation call's consumption.

    Append-only entries that form the auditable spend ledger.
    Once written, these records must never be modified.
    """
    provider: str
    model: str
    tokens: int
    cost: Decimal
    timestamp: datetime = field(default_factory=utc_now)
    project_id: Optional[str] = None
    user_id: Optional[str] = None
    task_type: Optional[str] = None
    tokens_in: int = 0
    tokens_out: int = 0
    terminal_state: str = "completed"
    request_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "cost", to_decimal(self.cost))


@dataclass(frozen=True)
class AggregateStats:
    """Figures derived from the ledger on demand. Never stored."""
    total_cost: Decimal
    total_entries: int
    total_tokens: int
    avg_cost_per_entry: Decimal
    cost_by_provider: Dict[str, Decimal]
    cost_by_model: Dict[str, Decimal]


@dataclass
class ProviderBreakdown:
    """Tokens, cost and call count for one provider or provider/model key."""
    tokens: int = 0
    cost: Decimal = Decimal("0")
    calls: int = 0
