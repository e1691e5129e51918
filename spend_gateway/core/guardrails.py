"""
Budget guardrails and limits enforcement.

Decides whether a request may proceed given already-known spend.

Enforcement is a soft limit: the pre-check reads current spend and decides,
but is not atomic with the ledger write that follows the call. Two
concurrent requests against the same scope can both pass and jointly
overshoot the limit.
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from ..storage.models import to_decimal
from .errors import ValidationError


class BudgetAction(Enum):
    """Budget decisions in order of severity."""
    ALLOW = 1  # Proceed silently
    WARN = 2   # Proceed, caller should surface a warning
    DENY = 3   # Reject before any provider call


class ScopeKind(Enum):
    PROJECT = "project"
    USER = "user"


class PeriodKind(Enum):
    """Window over which spend is measured against a limit."""
    DAILY = "daily"
    MONTHLY = "monthly"
    LIFETIME = "lifetime"


@dataclass(frozen=True)
class BudgetScope:
    """Accounting boundary spend is measured against."""
    kind: ScopeKind
    id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass(frozen=True)
class BudgetPolicy:
    """Spending limit for one scope over one period."""
    scope: BudgetScope
    period_kind: PeriodKind
    limit_amount: Decimal
    alert_threshold: float = 0.8
    enabled: bool = True

    def __post_init__(self):
        object.__setattr__(self, "limit_amount", to_decimal(self.limit_amount))
        if self.limit_amount < 0:
            raise ValidationError("limit_amount must be >= 0")
        if not 0 <= self.alert_threshold <= 1:
            raise ValidationError("alert_threshold must be between 0 and 1")


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of a budget check."""
    action: BudgetAction
    remaining_fraction: Optional[float] = None
    reason: str = ""
    scope: Optional[BudgetScope] = None

    @property
    def allowed(self) -> bool:
        return self.action is not BudgetAction.DENY

    @classmethod
    def allow(cls, scope: Optional[BudgetScope] = None) -> "BudgetDecision":
        return cls(BudgetAction.ALLOW, scope=scope)

    @classmethod
    def warn(cls, remaining_fraction: float, reason: str, scope: Optional[BudgetScope] = None) -> "BudgetDecision":
        return cls(BudgetAction.WARN, remaining_fraction=remaining_fraction, reason=reason, scope=scope)

    @classmethod
    def deny(cls, reason: str, scope: Optional[BudgetScope] = None) -> "BudgetDecision":
        return cls(BudgetAction.DENY, remaining_fraction=0.0, reason=reason, scope=scope)


def check_before_request(
    scope: BudgetScope,
    policy: BudgetPolicy,
    current_spend: Decimal,
) -> BudgetDecision:
    """Evaluate already-known spend against a policy.

    Rules, in order:
    - Disabled policy: always ALLOW
    - Zero limit: DENY (budget not configured for spending)
    - Spend at or over the limit: DENY
    - Spend at or over the alert threshold: WARN with the remaining fraction
    - Otherwise ALLOW

    Args:
        scope: Scope the spend belongs to
        policy: Policy to enforce
        current_spend: Spend already recorded for the scope and period

    Returns:
        BudgetDecision for the scope
    """
    if not policy.enabled:
        return BudgetDecision.allow(scope)

    spend = to_decimal(current_spend)
    if policy.limit_amount == 0:
        return BudgetDecision.deny(
            f"No {policy.period_kind.value} budget configured for {scope}", scope
        )

    ratio = spend / policy.limit_amount
    if ratio >= 1:
        return BudgetDecision.deny(
            f"{policy.period_kind.value.capitalize()} budget exceeded for {scope} "
            f"(${spend:.2f} / ${policy.limit_amount:.2f})",
            scope,
        )
    if ratio >= Decimal(str(policy.alert_threshold)):
        return BudgetDecision.warn(
            float(1 - ratio),
            f"{scope} has used {float(ratio):.0%} of its {policy.period_kind.value} budget",
            scope,
        )
    return BudgetDecision.allow(scope)


def check_request_estimate(
    estimated_cost: Decimal,
    max_cost_per_request: Optional[Decimal],
) -> BudgetDecision:
    """Deny a single request whose pre-flight estimate exceeds the ceiling."""
    if max_cost_per_request is None:
        return BudgetDecision.allow()
    if estimated_cost > max_cost_per_request:
        return BudgetDecision.deny(
            f"Estimated request cost ${estimated_cost:.4f} exceeds "
            f"maximum allowed ${max_cost_per_request:.4f}"
        )
    return BudgetDecision.allow()


def most_severe(decisions: Iterable[BudgetDecision]) -> BudgetDecision:
    """Return the most severe decision; the first one wins ties."""
    result = BudgetDecision.allow()
    for decision in decisions:
        if decision.action.value > result.action.value:
            result = decision
    return result


def period_start(period_kind: PeriodKind, now: Optional[datetime] = None) -> Optional[datetime]:
    """Start of the current window for ``period_kind``; None for lifetime."""
    now = now or datetime.now(timezone.utc)
    if period_kind is PeriodKind.DAILY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period_kind is PeriodKind.MONTHLY:
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return None


@dataclass(frozen=True)
class PolicyDefaults:
    """Limits applied to scopes that have no explicit policy yet."""
    project_limit: Decimal = Decimal("10.00")
    project_period: PeriodKind = PeriodKind.LIFETIME
    user_limit: Decimal = Decimal("50.00")
    user_period: PeriodKind = PeriodKind.MONTHLY
    alert_threshold: float = 0.8


class BudgetPolicyStore:
    """Holds at most one policy per (scope, period kind).

    Policies are created from defaults on first access and only change
    through ``set``.
    """

    def __init__(self, defaults: Optional[PolicyDefaults] = None):
        self.defaults = defaults or PolicyDefaults()
        self._policies: Dict[Tuple[BudgetScope, PeriodKind], BudgetPolicy] = {}
        self._lock = threading.Lock()

    def _default_limit(self, scope: BudgetScope) -> Decimal:
        if scope.kind is ScopeKind.PROJECT:
            return self.defaults.project_limit
        return self.defaults.user_limit

    def get(self, scope: BudgetScope, period_kind: PeriodKind) -> BudgetPolicy:
        key = (scope, period_kind)
        with self._lock:
            policy = self._policies.get(key)
            if policy is None:
                policy = BudgetPolicy(
                    scope=scope,
                    period_kind=period_kind,
                    limit_amount=self._default_limit(scope),
                    alert_threshold=self.defaults.alert_threshold,
                )
                self._policies[key] = policy
            return policy

    def set(self, policy: BudgetPolicy) -> BudgetPolicy:
        """Create or replace the policy for its (scope, period kind)."""
        with self._lock:
            self._policies[(policy.scope, policy.period_kind)] = policy
        return policy

    def update(self, scope: BudgetScope, period_kind: PeriodKind, **changes) -> BudgetPolicy:
        """Apply field changes to the existing (or default) policy."""
        return self.set(replace(self.get(scope, period_kind), **changes))

    def _for_scope(self, scope: BudgetScope, default_period: PeriodKind) -> List[BudgetPolicy]:
        with self._lock:
            existing = [p for (s, _), p in self._policies.items() if s == scope]
        return existing or [self.get(scope, default_period)]

    def policies_for(self, project_id: str, user_id: Optional[str] = None) -> List[BudgetPolicy]:
        """Policies that apply to a request from ``user_id`` on ``project_id``.

        Every stored policy for the project and user scopes is returned;
        a scope with none gets its default policy created.
        """
        policies = self._for_scope(BudgetScope(ScopeKind.PROJECT, project_id), self.defaults.project_period)
        if user_id:
            policies += self._for_scope(BudgetScope(ScopeKind.USER, user_id), self.defaults.user_period)
        return policies
