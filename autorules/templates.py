"""
Default rule templates, one per rule type.

New rules start from these when a rules file leaves out name, severity,
params or throttle. Templates always start in dry_run.
"""
from __future__ import annotations

import copy
from typing import Any, Dict

from .models import RuleType

DEFAULT_RULES: Dict[RuleType, Dict[str, Any]] = {
    RuleType.BUDGET_DEPLETION: {
        "name": "Budget Depletion Alert",
        "severity": "critical",
        "params": {"percentThreshold": 80, "beforeHourLocal": 16},
        "throttle": {"cooldownHours": 24, "maxActionsPerDay": 5},
    },
    RuleType.SPEND_SPIKE: {
        "name": "Spend Spike Detection",
        "severity": "warn",
        "params": {"lookbackDays": 7, "stdevMultiplier": 2.0, "minSpend": 5.0},
        "throttle": {"cooldownHours": 12, "maxActionsPerDay": 10},
    },
    RuleType.SEARCH_TERM_HARVEST: {
        "name": "Search Term Harvest",
        "severity": "info",
        "params": {"windowDays": 14, "minConvs": 2, "maxAcos": 35, "exactTo": "same_ad_group"},
        "throttle": {"cooldownHours": 48, "maxActionsPerDay": 50},
    },
    RuleType.SEARCH_TERM_PRUNE: {
        "name": "Search Term Pruning",
        "severity": "info",
        "params": {"windowDays": 14, "minClicks": 20, "minSpend": 10, "maxConvs": 0, "negateScope": "ad_group"},
        "throttle": {"cooldownHours": 72, "maxActionsPerDay": 100},
    },
}


def template_for(rule_type: RuleType) -> Dict[str, Any]:
    """Deep copy of the template so callers can mutate it."""
    return copy.deepcopy(DEFAULT_RULES[rule_type])


def all_templates() -> Dict[str, Dict[str, Any]]:
    return {rt.value: dict(template_for(rt), rule_type=rt.value, mode="dry_run") for rt in DEFAULT_RULES}
