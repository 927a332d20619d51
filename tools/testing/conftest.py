"""
Shared fixtures: an in-memory warehouse and helpers to seed rules and facts.
"""
import os
import tempfile
from datetime import date, datetime

# Keep test log files out of the working tree
os.environ.setdefault("AUTORULES_LOG_DIR", tempfile.mkdtemp(prefix="autorules-logs-"))

import duckdb
import pytest

from autorules.warehouse import init_warehouse, set_subscription, upsert_rule

TODAY = date(2026, 10, 17)


@pytest.fixture
def con():
    conn = duckdb.connect(":memory:")
    init_warehouse(conn)
    yield conn
    conn.close()


def add_rule(conn, rule_id, rule_type, profile_id="p1", user_id="u1", mode="auto", params=None, throttle=None, **extra):
    row = {
        "id": rule_id,
        "user_id": user_id,
        "profile_id": profile_id,
        "name": rule_id,
        "rule_type": rule_type,
        "mode": mode,
        "enabled": True,
        "severity": "info",
        "params": params or {},
        "throttle": throttle,
    }
    row.update(extra)
    upsert_rule(conn, row)
    return row


def add_tenant(conn, user_id="u1", plan="pro", status="active"):
    set_subscription(conn, user_id, plan, status)


def add_applied_action(conn, action_id, rule_id, profile_id="p1", day=TODAY):
    ts = datetime(day.year, day.month, day.day, 8, 0)
    conn.execute(
        """
        INSERT INTO action_queue (id, rule_id, profile_id, action_type, entity_type, entity_id,
                                  payload, idempotency_key, status, created_at, applied_at)
        VALUES (?, ?, ?, 'pause_campaign', 'campaign', 'x', '{}', ?, 'applied', ?, ?);
        """,
        [action_id, rule_id, profile_id, f"key-{action_id}", ts, ts],
    )


def count(conn, table, where="1=1", params=None):
    return conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {where};", params or []).fetchone()[0]


def budget_row(campaign_id, spend_micros, budget_micros=10_000_000, profile_id="p1", hour=12, day=TODAY):
    return {
        "profile_id": profile_id,
        "campaign_id": campaign_id,
        "minute": datetime(day.year, day.month, day.day, hour, 0),
        "budget_micros": budget_micros,
        "spend_micros": spend_micros,
    }


def term_row(search_term, clicks, cost, convs, sales, *, day=TODAY, campaign_id="c1", ad_group_id="ag1",
             match_type="BROAD", keyword_text="shoes", profile_id="p1"):
    return {
        "profile_id": profile_id,
        "date": day,
        "campaign_id": campaign_id,
        "ad_group_id": ad_group_id,
        "keyword_id": "k1",
        "keyword_text": keyword_text,
        "search_term": search_term,
        "match_type": match_type,
        "impressions": clicks * 20,
        "clicks": clicks,
        "cost_micros": int(cost * 1_000_000),
        "attributed_conversions_7d": convs,
        "attributed_sales_7d_micros": int(sales * 1_000_000),
    }
