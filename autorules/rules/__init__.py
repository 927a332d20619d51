"""
Rule evaluator registry.

Every RuleType variant is bound to exactly one evaluator (plus the loader for
the fact window it reads). The registry is checked at import time, so adding a
variant without an evaluator fails loudly instead of being skipped at runtime.
"""
from __future__ import annotations

from datetime import date
from typing import Callable, Dict, NamedTuple

from ..models import AutomationRule, EvaluationResult, FactWindow, RuleType
from ..stores import FactStore
from .budget_rules import (
    evaluate_budget_depletion,
    evaluate_spend_spike,
    load_budget_depletion_facts,
    load_spend_spike_facts,
)
from .common import RuleContext
from .search_term_rules import (
    evaluate_search_term_harvest,
    evaluate_search_term_prune,
    load_harvest_facts,
    load_prune_facts,
)


class RuleEvaluator(NamedTuple):
    load_facts: Callable[[FactStore, AutomationRule, date], FactWindow]
    evaluate: Callable[[RuleContext], EvaluationResult]


EVALUATORS: Dict[RuleType, RuleEvaluator] = {
    RuleType.BUDGET_DEPLETION: RuleEvaluator(load_budget_depletion_facts, evaluate_budget_depletion),
    RuleType.SPEND_SPIKE: RuleEvaluator(load_spend_spike_facts, evaluate_spend_spike),
    RuleType.SEARCH_TERM_HARVEST: RuleEvaluator(load_harvest_facts, evaluate_search_term_harvest),
    RuleType.SEARCH_TERM_PRUNE: RuleEvaluator(load_prune_facts, evaluate_search_term_prune),
}

_unhandled = set(RuleType) - set(EVALUATORS)
if _unhandled:
    raise RuntimeError(f"No evaluator registered for: {sorted(t.value for t in _unhandled)}")


def evaluator_for(rule_type: RuleType) -> RuleEvaluator:
    return EVALUATORS[rule_type]


__all__ = ["EVALUATORS", "RuleContext", "RuleEvaluator", "evaluator_for"]
