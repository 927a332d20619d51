# autorules/warehouse.py
from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import duckdb

from .errors import ConfigurationError


# -----------------------------
# Table contracts
# -----------------------------
# Tables this engine reads or writes. A warehouse missing any of them is a
# configuration error, not a per-rule failure.
REQUIRED_TABLES: List[str] = [
    "automation_rules",
    "billing_subscriptions",
    "governance_settings",
    "protected_entities",
    "fact_budget_usage",
    "fact_campaign_daily",
    "fact_search_term_daily",
    "alerts",
    "action_queue",
    "automation_rule_runs",
]

AUTOMATION_RULE_COLS: List[str] = [
    "id",
    "user_id",
    "profile_id",
    "name",
    "rule_type",
    "mode",
    "enabled",
    "severity",
    "params",
    "throttle",
    "created_at",
]

BUDGET_USAGE_COLS: List[str] = [
    "profile_id",
    "campaign_id",
    "minute",
    "budget_micros",
    "spend_micros",
]

CAMPAIGN_DAILY_COLS: List[str] = [
    "profile_id",
    "date",
    "campaign_id",
    "campaign_name",
    "impressions",
    "clicks",
    "cost_micros",
    "sales_micros",
]

SEARCH_TERM_DAILY_COLS: List[str] = [
    "profile_id",
    "date",
    "campaign_id",
    "ad_group_id",
    "keyword_id",
    "keyword_text",
    "search_term",
    "match_type",
    "impressions",
    "clicks",
    "cost_micros",
    "attributed_conversions_7d",
    "attributed_sales_7d_micros",
]

GOVERNANCE_SETTINGS_COLS: List[str] = [
    "profile_id",
    "max_bid_change_percent",
    "min_bid_micros",
    "max_bid_micros",
    "daily_spend_cap_micros",
    "monthly_spend_cap_micros",
    "max_actions_per_day",
    "require_approval_above_micros",
    "automation_paused",
    "automation_paused_at",
    "automation_paused_reason",
]

ALERT_COLS: List[str] = [
    "id",
    "rule_id",
    "profile_id",
    "entity_type",
    "entity_id",
    "level",
    "title",
    "message",
    "data",
    "created_at",
]

ACTION_COLS: List[str] = [
    "id",
    "rule_id",
    "profile_id",
    "action_type",
    "entity_type",
    "entity_id",
    "payload",
    "idempotency_key",
    "status",
    "created_at",
    "applied_at",
]


# -----------------------------
# Helpers
# -----------------------------
def utc_now() -> datetime:
    """Naive UTC timestamp (DuckDB TIMESTAMP columns carry no zone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def day_bounds(d: date) -> Tuple[datetime, datetime]:
    start = datetime(d.year, d.month, d.day)
    return start, start + timedelta(days=1)


def to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str, sort_keys=True)


def from_json(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def rows_as_dicts(cur: duckdb.DuckDBPyConnection) -> List[Dict[str, Any]]:
    cols = [c[0] for c in cur.description]
    return [dict(zip(cols, r)) for r in cur.fetchall()]


def _rows_to_tuples(rows: Sequence[Dict[str, Any]], cols: Sequence[str]) -> List[Tuple[Any, ...]]:
    return [tuple(row.get(c) for c in cols) for row in rows]


# -----------------------------
# Connect + init
# -----------------------------
def connect_warehouse(settings_or_path: Any, *, must_exist: bool = True) -> duckdb.DuckDBPyConnection:
    """
    Accepts either:
      - Settings-like object with attribute: db_path
      - string/pathlib path: "warehouse.duckdb" / Path("warehouse.duckdb") / ":memory:"

    Raises ConfigurationError when the file is missing (and must_exist) or
    cannot be opened.
    """
    if hasattr(settings_or_path, "db_path"):
        db_path = getattr(settings_or_path, "db_path")
    else:
        db_path = settings_or_path

    if isinstance(db_path, Path):
        db_path = str(db_path)

    if not isinstance(db_path, str):
        raise TypeError(
            f"connect_warehouse expected Settings(w/ db_path) or str path; got {type(settings_or_path)}"
        )

    if must_exist and db_path != ":memory:" and not Path(db_path).exists():
        raise ConfigurationError(f"Warehouse not found: {db_path}", context={"db_path": db_path})

    try:
        return duckdb.connect(db_path)
    except duckdb.Error as e:
        raise ConfigurationError(
            f"Cannot open warehouse {db_path}: {e}", context={"db_path": db_path}, original_error=e
        ) from e


def check_warehouse(conn: duckdb.DuckDBPyConnection) -> None:
    """Fail fast when any required table is missing."""
    try:
        present = {
            r[0]
            for r in conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = 'main';"
            ).fetchall()
        }
    except duckdb.Error as e:
        raise ConfigurationError(f"Cannot inspect warehouse schema: {e}", original_error=e) from e

    missing = [t for t in REQUIRED_TABLES if t not in present]
    if missing:
        raise ConfigurationError(
            f"Warehouse is missing tables: {', '.join(missing)}",
            context={"missing_tables": missing},
        )


def init_warehouse(conn: duckdb.DuckDBPyConnection) -> None:
    # Rules and tenant configuration
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS automation_rules (
            id VARCHAR PRIMARY KEY,
            user_id VARCHAR NOT NULL,
            profile_id VARCHAR NOT NULL,
            name VARCHAR,
            rule_type VARCHAR NOT NULL,
            mode VARCHAR NOT NULL DEFAULT 'dry_run',
            enabled BOOLEAN NOT NULL DEFAULT TRUE,
            severity VARCHAR NOT NULL DEFAULT 'info',
            params VARCHAR,
            throttle VARCHAR,
            created_at TIMESTAMP
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS billing_subscriptions (
            user_id VARCHAR PRIMARY KEY,
            plan VARCHAR NOT NULL DEFAULT 'free',
            status VARCHAR NOT NULL DEFAULT 'active'
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS governance_settings (
            profile_id VARCHAR PRIMARY KEY,
            max_bid_change_percent DOUBLE NOT NULL DEFAULT 20,
            min_bid_micros BIGINT NOT NULL DEFAULT 100000,
            max_bid_micros BIGINT NOT NULL DEFAULT 10000000,
            daily_spend_cap_micros BIGINT,
            monthly_spend_cap_micros BIGINT,
            max_actions_per_day INTEGER NOT NULL DEFAULT 100,
            require_approval_above_micros BIGINT NOT NULL DEFAULT 1000000,
            automation_paused BOOLEAN NOT NULL DEFAULT FALSE,
            automation_paused_at TIMESTAMP,
            automation_paused_reason VARCHAR
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS protected_entities (
            profile_id VARCHAR NOT NULL,
            entity_type VARCHAR NOT NULL,
            entity_id VARCHAR NOT NULL,
            reason VARCHAR,
            PRIMARY KEY (profile_id, entity_type, entity_id)
        );
        """
    )

    # Performance facts (populated by report ingestion)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS fact_budget_usage (
            profile_id VARCHAR NOT NULL,
            campaign_id VARCHAR NOT NULL,
            minute TIMESTAMP NOT NULL,
            budget_micros BIGINT,
            spend_micros BIGINT
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS fact_campaign_daily (
            profile_id VARCHAR NOT NULL,
            date DATE NOT NULL,
            campaign_id VARCHAR NOT NULL,
            campaign_name VARCHAR,
            impressions BIGINT,
            clicks BIGINT,
            cost_micros BIGINT,
            sales_micros BIGINT
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS fact_search_term_daily (
            profile_id VARCHAR NOT NULL,
            date DATE NOT NULL,
            campaign_id VARCHAR NOT NULL,
            ad_group_id VARCHAR NOT NULL,
            keyword_id VARCHAR,
            keyword_text VARCHAR,
            search_term VARCHAR NOT NULL,
            match_type VARCHAR,
            impressions BIGINT,
            clicks BIGINT,
            cost_micros BIGINT,
            attributed_conversions_7d DOUBLE,
            attributed_sales_7d_micros BIGINT
        );
        """
    )

    # Outputs of the engine
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alerts (
            id VARCHAR PRIMARY KEY,
            rule_id VARCHAR,
            profile_id VARCHAR NOT NULL,
            entity_type VARCHAR,
            entity_id VARCHAR,
            level VARCHAR NOT NULL,
            title VARCHAR,
            message VARCHAR,
            data VARCHAR,
            created_at TIMESTAMP NOT NULL
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS action_queue (
            id VARCHAR PRIMARY KEY,
            rule_id VARCHAR,
            profile_id VARCHAR NOT NULL,
            action_type VARCHAR NOT NULL,
            entity_type VARCHAR,
            entity_id VARCHAR,
            payload VARCHAR,
            idempotency_key VARCHAR NOT NULL UNIQUE,
            status VARCHAR NOT NULL DEFAULT 'queued',
            created_at TIMESTAMP NOT NULL,
            applied_at TIMESTAMP
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS automation_rule_runs (
            id VARCHAR PRIMARY KEY,
            rule_id VARCHAR NOT NULL,
            profile_id VARCHAR NOT NULL,
            started_at TIMESTAMP NOT NULL,
            finished_at TIMESTAMP,
            status VARCHAR NOT NULL,
            alerts_created INTEGER DEFAULT 0,
            actions_enqueued INTEGER DEFAULT 0,
            error VARCHAR
        );
        """
    )


# -----------------------------
# Bulk inserts (fixtures, seed data, ingestion stand-ins)
# -----------------------------
def _insert_rows(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    cols: Sequence[str],
    rows: Sequence[Dict[str, Any]],
) -> None:
    if not rows:
        return
    cols_sql = ", ".join(cols)
    qmarks = ", ".join(["?"] * len(cols))
    sql = f"INSERT INTO {table} ({cols_sql}) VALUES ({qmarks});"
    conn.executemany(sql, _rows_to_tuples(rows, cols))


def insert_budget_usage(conn: duckdb.DuckDBPyConnection, rows: Sequence[Dict[str, Any]]) -> None:
    _insert_rows(conn, "fact_budget_usage", BUDGET_USAGE_COLS, rows)


def insert_campaign_daily(conn: duckdb.DuckDBPyConnection, rows: Sequence[Dict[str, Any]]) -> None:
    _insert_rows(conn, "fact_campaign_daily", CAMPAIGN_DAILY_COLS, rows)


def insert_search_term_daily(conn: duckdb.DuckDBPyConnection, rows: Sequence[Dict[str, Any]]) -> None:
    _insert_rows(conn, "fact_search_term_daily", SEARCH_TERM_DAILY_COLS, rows)


def upsert_governance_settings(conn: duckdb.DuckDBPyConnection, row: Dict[str, Any]) -> None:
    defaults = {
        "max_bid_change_percent": 20,
        "min_bid_micros": 100_000,
        "max_bid_micros": 10_000_000,
        "max_actions_per_day": 100,
        "require_approval_above_micros": 1_000_000,
        "automation_paused": False,
    }
    merged = {**defaults, **row}
    conn.execute("DELETE FROM governance_settings WHERE profile_id = ?;", [merged["profile_id"]])
    _insert_rows(conn, "governance_settings", GOVERNANCE_SETTINGS_COLS, [merged])


def add_protected_entity(
    conn: duckdb.DuckDBPyConnection,
    profile_id: str,
    entity_type: str,
    entity_id: str,
    reason: Optional[str] = None,
) -> None:
    conn.execute(
        """
        INSERT INTO protected_entities (profile_id, entity_type, entity_id, reason)
        VALUES (?, ?, ?, ?)
        ON CONFLICT DO NOTHING;
        """,
        [profile_id, entity_type, str(entity_id), reason],
    )


def set_subscription(conn: duckdb.DuckDBPyConnection, user_id: str, plan: str, status: str = "active") -> None:
    conn.execute("DELETE FROM billing_subscriptions WHERE user_id = ?;", [user_id])
    conn.execute(
        "INSERT INTO billing_subscriptions (user_id, plan, status) VALUES (?, ?, ?);",
        [user_id, plan, status],
    )


def upsert_rule(conn: duckdb.DuckDBPyConnection, row: Dict[str, Any]) -> None:
    r = dict(row)
    r["params"] = to_json(r.get("params") or {})
    r["throttle"] = to_json(r.get("throttle"))
    r.setdefault("created_at", utc_now())
    conn.execute("DELETE FROM automation_rules WHERE id = ?;", [r["id"]])
    _insert_rows(conn, "automation_rules", AUTOMATION_RULE_COLS, [r])
