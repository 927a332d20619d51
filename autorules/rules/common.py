"""
Helpers shared by the rule evaluators.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict

from ..idempotency import idempotency_key
from ..models import (
    Action,
    ActionType,
    Alert,
    AlertLevel,
    AutomationRule,
    EntityType,
    FactWindow,
)

_WS = re.compile(r"\s+")


@dataclass
class RuleContext:
    """Everything an evaluator needs to make a decision."""
    rule: AutomationRule
    facts: FactWindow
    # Calendar day the cycle evaluates (also the idempotency day)
    eval_date: date
    # Timestamp stamped on every alert created in this evaluation
    now: datetime


def normalize_term(term: Any) -> str:
    return _WS.sub(" ", str(term or "").strip().lower())


def micros_to_dollars(micros: Any) -> float:
    return float(micros or 0) / 1_000_000


def make_alert(
    ctx: RuleContext,
    entity_type: EntityType,
    entity_id: str,
    level: AlertLevel,
    title: str,
    message: str,
    data: Dict[str, Any],
) -> Alert:
    return Alert(
        rule_id=ctx.rule.id,
        profile_id=ctx.rule.profile_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        level=level,
        title=title,
        message=message,
        data=data,
        created_at=ctx.now,
    )


def make_action(
    ctx: RuleContext,
    action_type: ActionType,
    entity_type: EntityType,
    entity_id: str,
    entity_key: str,
    payload: Dict[str, Any],
) -> Action:
    return Action(
        rule_id=ctx.rule.id,
        profile_id=ctx.rule.profile_id,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload=payload,
        idempotency_key=idempotency_key(ctx.rule.profile_id, action_type, entity_key, ctx.eval_date),
    )
