"""
Search Term Rules — harvest winners, prune wasted spend.

Rules:
  search_term_harvest: Term converts (>= minConvs) at ACoS <= maxAcos and is
                       not already an exact keyword
                       (info alert; auto mode creates an EXACT keyword bid at
                       the term's average CPC)
  search_term_prune:   Term has <= maxConvs conversions after minClicks clicks
                       or minSpend spend
                       (warning alert; auto mode adds an exact negative at
                       ad group or campaign scope)

Both aggregate fact_search_term_daily over the trailing windowDays (inclusive
of the evaluation day).
"""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, Set, Tuple

from ..config_models import SearchTermHarvestParams, SearchTermPruneParams, parse_rule_params
from ..idempotency import entity_key
from ..models import (
    ActionType,
    AlertLevel,
    EntityType,
    EvaluationResult,
    FactWindow,
    RuleType,
    _safe_float,
    _safe_int,
)
from ..stores import FactStore, window_start
from .common import RuleContext, make_action, make_alert, micros_to_dollars, normalize_term

EXACT = "EXACT"
NEGATIVE_EXACT = "NEGATIVE_EXACT"


def _load_search_terms(store: FactStore, rule, eval_date: date, window_days: int) -> FactWindow:
    rows = store.search_term_daily(rule.profile_id, window_start(eval_date, window_days), eval_date)
    return FactWindow(search_terms=rows)


def _existing_exact_terms(rows: Iterable[Dict[str, Any]]) -> Set[str]:
    """Terms already served by an exact keyword with the same text."""
    terms: Set[str] = set()
    for row in rows:
        if str(row.get("match_type") or "").upper() != EXACT:
            continue
        term = normalize_term(row.get("search_term"))
        if term and normalize_term(row.get("keyword_text")) == term:
            terms.add(term)
    return terms


def _aggregate(
    rows: Iterable[Dict[str, Any]],
    by_ad_group: bool,
) -> Dict[Tuple[str, str, str], Dict[str, float]]:
    """Sum clicks/cost/conversions/sales per (campaign, ad group or '', term)."""
    totals: Dict[Tuple[str, str, str], Dict[str, float]] = {}
    for row in rows:
        term = normalize_term(row.get("search_term"))
        if not term:
            continue
        key = (
            str(row.get("campaign_id")),
            str(row.get("ad_group_id")) if by_ad_group else "",
            term,
        )
        t = totals.setdefault(key, {"clicks": 0, "cost_micros": 0, "conversions": 0.0, "sales_micros": 0})
        t["clicks"] += _safe_int(row.get("clicks"))
        t["cost_micros"] += _safe_int(row.get("cost_micros"))
        t["conversions"] += _safe_float(row.get("attributed_conversions_7d"))
        t["sales_micros"] += _safe_int(row.get("attributed_sales_7d_micros"))
    return totals


# ─────────────────────────────────────────────────────────────
# Harvest
# ─────────────────────────────────────────────────────────────
def load_harvest_facts(store: FactStore, rule, eval_date: date) -> FactWindow:
    params: SearchTermHarvestParams = parse_rule_params(RuleType.SEARCH_TERM_HARVEST, rule.params)
    return _load_search_terms(store, rule, eval_date, params.windowDays)


def evaluate_search_term_harvest(ctx: RuleContext) -> EvaluationResult:
    params: SearchTermHarvestParams = parse_rule_params(RuleType.SEARCH_TERM_HARVEST, ctx.rule.params)
    result = EvaluationResult()

    rows = ctx.facts.search_terms
    existing = _existing_exact_terms(rows)
    totals = _aggregate(rows, by_ad_group=True)

    for (campaign_id, ad_group_id, term) in sorted(totals):
        if term in existing:
            continue

        t = totals[(campaign_id, ad_group_id, term)]
        if t["conversions"] < params.minConvs or t["sales_micros"] <= 0:
            continue

        acos = t["cost_micros"] / t["sales_micros"] * 100
        if acos > params.maxAcos:
            continue

        clicks = int(t["clicks"])
        avg_cpc_micros = int(round(t["cost_micros"] / clicks)) if clicks > 0 else None

        data = {
            "search_term": term,
            "campaign_id": campaign_id,
            "ad_group_id": ad_group_id,
            "window_days": params.windowDays,
            "clicks": clicks,
            "cost": round(micros_to_dollars(t["cost_micros"]), 2),
            "sales": round(micros_to_dollars(t["sales_micros"]), 2),
            "conversions": t["conversions"],
            "acos": round(acos, 2),
            "max_acos": params.maxAcos,
            "avg_cpc_micros": avg_cpc_micros,
        }
        result.alerts.append(
            make_alert(
                ctx,
                EntityType.SEARCH_TERM,
                entity_key(ad_group_id, term),
                AlertLevel.INFO,
                "Search Term Harvest Opportunity",
                f'Search term "{term}" converted {t["conversions"]:g} times at {acos:.1f}% ACoS',
                data,
            )
        )

        if ctx.rule.is_auto and avg_cpc_micros is not None:
            result.actions.append(
                make_action(
                    ctx,
                    ActionType.CREATE_KEYWORD,
                    EntityType.AD_GROUP,
                    ad_group_id,
                    entity_key(ad_group_id, term),
                    {
                        "campaign_id": campaign_id,
                        "ad_group_id": ad_group_id,
                        "keyword_text": term,
                        "match_type": EXACT,
                        "bid_micros": avg_cpc_micros,
                        "reason": "search_term_harvest",
                        "description": f'Add "{term}" as an exact keyword in ad group {ad_group_id}',
                        "trigger_metrics": data,
                        "estimated_impact_micros": avg_cpc_micros,
                        "estimated_impact": f"New exact keyword bidding ${micros_to_dollars(avg_cpc_micros):.2f} per click",
                    },
                )
            )

    return result


# ─────────────────────────────────────────────────────────────
# Prune
# ─────────────────────────────────────────────────────────────
def load_prune_facts(store: FactStore, rule, eval_date: date) -> FactWindow:
    params: SearchTermPruneParams = parse_rule_params(RuleType.SEARCH_TERM_PRUNE, rule.params)
    return _load_search_terms(store, rule, eval_date, params.windowDays)


def evaluate_search_term_prune(ctx: RuleContext) -> EvaluationResult:
    params: SearchTermPruneParams = parse_rule_params(RuleType.SEARCH_TERM_PRUNE, ctx.rule.params)
    result = EvaluationResult()
    by_ad_group = params.negateScope == "ad_group"

    totals = _aggregate(ctx.facts.search_terms, by_ad_group=by_ad_group)

    for (campaign_id, ad_group_id, term) in sorted(totals):
        t = totals[(campaign_id, ad_group_id, term)]
        spend = micros_to_dollars(t["cost_micros"])

        if t["conversions"] > params.maxConvs:
            continue
        if t["clicks"] < params.minClicks and spend < params.minSpend:
            continue

        if by_ad_group:
            scope_type, scope_id = EntityType.AD_GROUP, ad_group_id
        else:
            scope_type, scope_id = EntityType.CAMPAIGN, campaign_id

        data = {
            "search_term": term,
            "campaign_id": campaign_id,
            "ad_group_id": ad_group_id or None,
            "scope": params.negateScope,
            "window_days": params.windowDays,
            "clicks": int(t["clicks"]),
            "cost": round(spend, 2),
            "conversions": t["conversions"],
            "min_clicks": params.minClicks,
            "min_spend": params.minSpend,
            "max_convs": params.maxConvs,
        }
        result.alerts.append(
            make_alert(
                ctx,
                EntityType.SEARCH_TERM,
                entity_key(scope_id, term),
                AlertLevel.WARN,
                "Search Term Prune Candidate",
                f'Search term "{term}" spent ${spend:.2f} over {int(t["clicks"])} clicks '
                f'with {t["conversions"]:g} conversions',
                data,
            )
        )

        if ctx.rule.is_auto:
            daily_waste_micros = int(t["cost_micros"] / params.windowDays)
            payload = {
                "campaign_id": campaign_id,
                "keyword_text": term,
                "match_type": NEGATIVE_EXACT,
                "scope": params.negateScope,
                "reason": "search_term_prune",
                "description": f'Add "{term}" as an exact negative at {params.negateScope} {scope_id}',
                "trigger_metrics": data,
                "estimated_impact_micros": daily_waste_micros,
                "estimated_impact": f"Saves about ${micros_to_dollars(daily_waste_micros):.2f}/day",
            }
            if by_ad_group:
                payload["ad_group_id"] = ad_group_id
            result.actions.append(
                make_action(
                    ctx,
                    ActionType.ADD_NEGATIVE,
                    scope_type,
                    scope_id,
                    entity_key(params.negateScope, scope_id, term),
                    payload,
                )
            )

    return result
