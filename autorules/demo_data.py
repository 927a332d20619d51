"""
Synthetic data for local runs of the rules engine.

Seeds one tenant per plan tier with facts that trip each rule type:
  - a campaign at 85% of its daily budget (budget_depletion)
  - a campaign whose spend jumps well above its 7-day baseline (spend_spike)
  - a converting search term at low ACoS (search_term_harvest)
  - a search term with clicks and spend but no conversions (search_term_prune)

Usage:
    python -m autorules.cli seed-demo --db warehouse.duckdb
"""
from __future__ import annotations

import random
from datetime import date, datetime, timedelta
from typing import Dict, List

import duckdb

from .warehouse import (
    insert_budget_usage,
    insert_campaign_daily,
    insert_search_term_daily,
    set_subscription,
    upsert_governance_settings,
    upsert_rule,
)

DEMO_TENANTS = [
    # (user_id, profile_id, plan)
    ("user-free", "profile-free", "free"),
    ("user-starter", "profile-starter", "starter"),
    ("user-pro", "profile-pro", "pro"),
]


def _budget_rows(profile_id: str, day: date) -> List[Dict]:
    rows = []
    for hour, spend in ((9, 2_500_000), (11, 6_000_000), (13, 8_500_000)):
        rows.append(
            {
                "profile_id": profile_id,
                "campaign_id": "1001",
                "minute": datetime(day.year, day.month, day.day, hour, 0),
                "budget_micros": 10_000_000,
                "spend_micros": spend,
            }
        )
    # Healthy campaign
    rows.append(
        {
            "profile_id": profile_id,
            "campaign_id": "1002",
            "minute": datetime(day.year, day.month, day.day, 13, 0),
            "budget_micros": 50_000_000,
            "spend_micros": 12_000_000,
        }
    )
    return rows


def _campaign_daily_rows(profile_id: str, day: date, rng: random.Random) -> List[Dict]:
    rows = []
    for i in range(7, 0, -1):
        d = day - timedelta(days=i)
        rows.append(
            {
                "profile_id": profile_id,
                "date": d,
                "campaign_id": "1002",
                "campaign_name": "Generic - Exact",
                "impressions": 4000,
                "clicks": 120,
                "cost_micros": int(rng.uniform(9.0, 12.0) * 1_000_000),
                "sales_micros": 40_000_000,
            }
        )
    rows.append(
        {
            "profile_id": profile_id,
            "date": day,
            "campaign_id": "1002",
            "campaign_name": "Generic - Exact",
            "impressions": 6000,
            "clicks": 190,
            "cost_micros": 25_000_000,
            "sales_micros": 45_000_000,
        }
    )
    return rows


def _search_term_rows(profile_id: str, day: date) -> List[Dict]:
    base = {
        "profile_id": profile_id,
        "campaign_id": "1002",
        "ad_group_id": "2001",
        "keyword_id": "3001",
        "keyword_text": "running shoes",
        "match_type": "BROAD",
        "impressions": 300,
    }
    rows = []
    for i in range(3):
        d = day - timedelta(days=i)
        rows.append(
            dict(
                base,
                date=d,
                search_term="trail running shoes women",
                clicks=3,
                cost_micros=4_000_000,
                attributed_conversions_7d=1,
                attributed_sales_7d_micros=20_000_000,
            )
        )
        rows.append(
            dict(
                base,
                date=d,
                search_term="free running shoes",
                clicks=9,
                cost_micros=4_500_000,
                attributed_conversions_7d=0,
                attributed_sales_7d_micros=0,
            )
        )
    return rows


def _rules_for(user_id: str, profile_id: str) -> List[Dict]:
    return [
        {
            "id": f"{profile_id}-budget",
            "user_id": user_id,
            "profile_id": profile_id,
            "name": "Budget Depletion Alert",
            "rule_type": "budget_depletion",
            "mode": "auto",
            "enabled": True,
            "severity": "critical",
            "params": {"percentThreshold": 80},
            "throttle": {"cooldownHours": 24, "maxActionsPerDay": 5},
        },
        {
            "id": f"{profile_id}-spike",
            "user_id": user_id,
            "profile_id": profile_id,
            "name": "Spend Spike Detection",
            "rule_type": "spend_spike",
            "mode": "suggestion",
            "enabled": True,
            "severity": "warn",
            "params": {"lookbackDays": 7, "stdevMultiplier": 2.0, "minSpend": 5.0},
            "throttle": None,
        },
        {
            "id": f"{profile_id}-harvest",
            "user_id": user_id,
            "profile_id": profile_id,
            "name": "Search Term Harvest",
            "rule_type": "search_term_harvest",
            "mode": "auto",
            "enabled": True,
            "severity": "info",
            "params": {"windowDays": 14, "minConvs": 2, "maxAcos": 35},
            "throttle": {"cooldownHours": 48, "maxActionsPerDay": 50},
        },
        {
            "id": f"{profile_id}-prune",
            "user_id": user_id,
            "profile_id": profile_id,
            "name": "Search Term Pruning",
            "rule_type": "search_term_prune",
            "mode": "auto",
            "enabled": True,
            "severity": "warn",
            "params": {"windowDays": 14, "minClicks": 20, "minSpend": 10, "maxConvs": 0},
            "throttle": {"cooldownHours": 72, "maxActionsPerDay": 100},
        },
    ]


def seed_demo(conn: duckdb.DuckDBPyConnection, day: date, seed: int = 42) -> Dict[str, int]:
    """Insert the demo data set for `day`. Returns row counts per table."""
    rng = random.Random(seed)
    counts = {"rules": 0, "budget_usage": 0, "campaign_daily": 0, "search_terms": 0}

    for user_id, profile_id, plan in DEMO_TENANTS:
        set_subscription(conn, user_id, plan)
        upsert_governance_settings(conn, {"profile_id": profile_id})

        budget = _budget_rows(profile_id, day)
        daily = _campaign_daily_rows(profile_id, day, rng)
        terms = _search_term_rows(profile_id, day)
        insert_budget_usage(conn, budget)
        insert_campaign_daily(conn, daily)
        insert_search_term_daily(conn, terms)

        rules = _rules_for(user_id, profile_id)
        for r in rules:
            upsert_rule(conn, r)

        counts["rules"] += len(rules)
        counts["budget_usage"] += len(budget)
        counts["campaign_daily"] += len(daily)
        counts["search_terms"] += len(terms)

    return counts
