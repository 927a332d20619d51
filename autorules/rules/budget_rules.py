"""
Budget Rules — Campaign-level spend monitoring.

Rules:
  budget_depletion: Campaign has used percentThreshold% of today's budget
                    (critical alert; auto mode pauses the campaign)
  spend_spike:      Today's spend is above mean + k*stdev of the prior days
                    (warning alert only, never acts)
"""
from __future__ import annotations

import statistics
from datetime import date, datetime, timedelta
from typing import Any, Dict, List

from ..config_models import BudgetDepletionParams, SpendSpikeParams, parse_rule_params
from ..idempotency import entity_key
from ..models import (
    ActionType,
    AlertLevel,
    EntityType,
    EvaluationResult,
    FactWindow,
    RuleType,
    _safe_float,
)
from ..stores import FactStore
from .common import RuleContext, make_action, make_alert, micros_to_dollars

# Spend spike needs at least this many prior days to form a baseline
MIN_BASELINE_DAYS = 3


def _as_datetime(v: Any) -> datetime:
    if isinstance(v, datetime):
        return v
    if isinstance(v, date):
        return datetime(v.year, v.month, v.day)
    return datetime.fromisoformat(str(v).replace("Z", "+00:00")).replace(tzinfo=None)


def _as_date(v: Any) -> date:
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v).strip()[:10])


# ─────────────────────────────────────────────────────────────
# Budget depletion
# ─────────────────────────────────────────────────────────────
def load_budget_depletion_facts(store: FactStore, rule, eval_date: date) -> FactWindow:
    return FactWindow(budget_usage=store.budget_usage_for_day(rule.profile_id, eval_date))


def _usage_percent(row: Dict[str, Any]) -> float:
    budget_micros = _safe_float(row.get("budget_micros"))
    spend_micros = _safe_float(row.get("spend_micros"))
    return (spend_micros / budget_micros) * 100 if budget_micros > 0 else 0.0


def evaluate_budget_depletion(ctx: RuleContext) -> EvaluationResult:
    """
    Trigger: latest spend/budget of the day >= percentThreshold
             (and, when beforeHourLocal is set, the first row of the day at or
             above the threshold falls before that hour)
    Alert:   critical
    Action:  pause_campaign (auto mode only)

    Usage rows are timestamped in the account's reporting time zone, so
    beforeHourLocal compares against the stored hour with no conversion.
    """
    params: BudgetDepletionParams = parse_rule_params(RuleType.BUDGET_DEPLETION, ctx.rule.params)
    result = EvaluationResult()

    # Usage rows per campaign, oldest first
    by_campaign: Dict[str, List[Dict[str, Any]]] = {}
    for row in ctx.facts.budget_usage:
        by_campaign.setdefault(str(row.get("campaign_id")), []).append(row)

    for campaign_id in sorted(by_campaign):
        rows = sorted(by_campaign[campaign_id], key=lambda r: _as_datetime(r.get("minute")))
        row = rows[-1]
        budget_micros = _safe_float(row.get("budget_micros"))
        spend_micros = _safe_float(row.get("spend_micros"))
        usage_percent = _usage_percent(row)

        if usage_percent < params.percentThreshold:
            continue

        minute = _as_datetime(row.get("minute"))
        crossed_at = next(
            _as_datetime(r.get("minute")) for r in rows if _usage_percent(r) >= params.percentThreshold
        )
        if params.beforeHourLocal is not None and crossed_at.hour >= params.beforeHourLocal:
            continue

        data = {
            "usage_percent": round(usage_percent, 2),
            "spend_micros": int(spend_micros),
            "budget_micros": int(budget_micros),
            "threshold": params.percentThreshold,
            "as_of": minute.isoformat(),
            "crossed_at": crossed_at.isoformat(),
        }
        result.alerts.append(
            make_alert(
                ctx,
                EntityType.CAMPAIGN,
                campaign_id,
                AlertLevel.CRITICAL,
                "Budget Depletion Alert",
                f"Campaign {campaign_id} has used {usage_percent:.1f}% of daily budget",
                data,
            )
        )

        if ctx.rule.is_auto:
            remaining_micros = max(int(budget_micros - spend_micros), 0)
            result.actions.append(
                make_action(
                    ctx,
                    ActionType.PAUSE_CAMPAIGN,
                    EntityType.CAMPAIGN,
                    campaign_id,
                    entity_key(campaign_id),
                    {
                        "campaign_id": campaign_id,
                        "reason": "budget_depletion",
                        "description": (
                            f"Pause campaign {campaign_id}: {usage_percent:.1f}% of daily budget "
                            f"used (threshold {params.percentThreshold:g}%)"
                        ),
                        "usage_percent": round(usage_percent, 2),
                        "trigger_metrics": data,
                        "estimated_impact_micros": remaining_micros,
                        "estimated_impact": (
                            f"Holds back up to ${micros_to_dollars(remaining_micros):.2f} "
                            f"of remaining daily budget"
                        ),
                    },
                )
            )

    return result


# ─────────────────────────────────────────────────────────────
# Spend spike
# ─────────────────────────────────────────────────────────────
def load_spend_spike_facts(store: FactStore, rule, eval_date: date) -> FactWindow:
    params: SpendSpikeParams = parse_rule_params(RuleType.SPEND_SPIKE, rule.params)
    start = eval_date - timedelta(days=params.lookbackDays)
    return FactWindow(campaign_daily=store.campaign_daily(rule.profile_id, start, eval_date))


def evaluate_spend_spike(ctx: RuleContext) -> EvaluationResult:
    """
    Trigger: today's spend > mean + stdevMultiplier * stdev (population) of the
             prior lookbackDays, with >= 3 prior days, and today >= minSpend
    Alert:   warn
    Action:  none
    """
    params: SpendSpikeParams = parse_rule_params(RuleType.SPEND_SPIKE, ctx.rule.params)
    result = EvaluationResult()
    window_start = ctx.eval_date - timedelta(days=params.lookbackDays)

    campaigns: Dict[str, Dict[str, Any]] = {}
    for row in ctx.facts.campaign_daily:
        day = _as_date(row.get("date"))
        if day < window_start or day > ctx.eval_date:
            continue
        campaign_id = str(row.get("campaign_id"))
        entry = campaigns.setdefault(
            campaign_id,
            {"name": row.get("campaign_name") or campaign_id, "prior": [], "today": 0.0},
        )
        spend = micros_to_dollars(row.get("cost_micros"))
        if day == ctx.eval_date:
            entry["today"] += spend
        else:
            entry["prior"].append(spend)

    for campaign_id in sorted(campaigns):
        entry = campaigns[campaign_id]
        prior: List[float] = entry["prior"]
        today_spend: float = entry["today"]

        if len(prior) < MIN_BASELINE_DAYS or today_spend < params.minSpend:
            continue

        mean = statistics.fmean(prior)
        stdev = statistics.pstdev(prior)
        threshold = mean + params.stdevMultiplier * stdev

        if today_spend <= threshold:
            continue

        above = f"{(today_spend / mean - 1) * 100:.1f}% above baseline" if mean > 0 else "above a zero baseline"
        result.alerts.append(
            make_alert(
                ctx,
                EntityType.CAMPAIGN,
                campaign_id,
                AlertLevel.WARN,
                "Spend Spike Detected",
                f'Campaign "{entry["name"]}" spend is {above}',
                {
                    "today_spend": round(today_spend, 2),
                    "baseline_mean": round(mean, 4),
                    "baseline_stdev": round(stdev, 4),
                    "baseline_days": len(prior),
                    "threshold": round(threshold, 4),
                    "spike_multiplier": round(today_spend / mean, 4) if mean > 0 else None,
                },
            )
        )

    return result
