"""
Plan tier entitlements — which rule types a subscription may run.
"""
from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from .models import RuleType

FREE = "free"
STARTER = "starter"
PRO = "pro"

_FREE_RULES = frozenset({RuleType.BUDGET_DEPLETION, RuleType.SPEND_SPIKE})

PLAN_RULE_TYPES: Dict[str, FrozenSet[RuleType]] = {
    FREE: _FREE_RULES,
    STARTER: _FREE_RULES | {RuleType.SEARCH_TERM_HARVEST, RuleType.SEARCH_TERM_PRUNE},
    PRO: frozenset(RuleType),
}

# Subscriptions in any other status fall back to the free plan
ACTIVE_STATUSES = ("active", "trialing")


def effective_plan(plan: Optional[str], status: Optional[str]) -> str:
    plan = (plan or FREE).strip().lower()
    status = (status or "active").strip().lower()
    if status not in ACTIVE_STATUSES:
        return FREE
    return plan


def is_rule_type_allowed(plan: str, rule_type: RuleType) -> bool:
    """Unknown plans allow nothing."""
    return rule_type in PLAN_RULE_TYPES.get(plan, frozenset())
