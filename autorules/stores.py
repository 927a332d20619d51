"""
Store access for the rules engine.

Each class wraps one concern of the warehouse:
- RuleStore: automation_rules (read all enabled rows)
- FactStore: performance facts (budget usage, campaign daily, search term daily)
- GovernanceStore: governance_settings, protected_entities, billing_subscriptions,
  applied-action counts for quotas and throttles
- ResultStore: alerts, action_queue, automation_rule_runs
"""

import uuid
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import duckdb

from .errors import ConfigurationError, FactReadError, PersistenceError
from .models import (
    Action,
    ActionStatus,
    Alert,
    EntityType,
    GovernanceSettings,
    ProtectedEntity,
    RuleRun,
    _safe_float,
    _safe_int,
)
from .warehouse import ACTION_COLS, ALERT_COLS, day_bounds, rows_as_dicts, to_json, utc_now


class RuleStore:
    """Reads automation rules."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def load_enabled_rules(self) -> List[Dict[str, Any]]:
        """
        Load every enabled rule across all tenants, oldest first.

        Rows are returned raw; turning a row into an AutomationRule happens per
        rule so that one malformed row cannot abort the cycle.
        """
        try:
            cur = self.conn.execute(
                """
                SELECT *
                FROM automation_rules
                WHERE enabled = TRUE
                ORDER BY created_at NULLS LAST, id;
                """
            )
            return rows_as_dicts(cur)
        except duckdb.Error as e:
            raise ConfigurationError(f"Failed to fetch rules: {e}", original_error=e) from e


class FactStore:
    """Read-only access to performance facts. Read failures raise FactReadError."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def _query(self, sql: str, params: Sequence[Any], what: str) -> List[Dict[str, Any]]:
        try:
            return rows_as_dicts(self.conn.execute(sql, list(params)))
        except duckdb.Error as e:
            raise FactReadError(f"Failed to read {what}: {e}", original_error=e) from e

    def budget_usage_for_day(self, profile_id: str, day: date) -> List[Dict[str, Any]]:
        start, end = day_bounds(day)
        return self._query(
            """
            SELECT profile_id, campaign_id, minute, budget_micros, spend_micros
            FROM fact_budget_usage
            WHERE profile_id = ?
              AND minute >= ?
              AND minute < ?
            ORDER BY minute DESC;
            """,
            [profile_id, start, end],
            "budget usage",
        )

    def campaign_daily(self, profile_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT date, campaign_id, campaign_name, clicks, cost_micros, sales_micros
            FROM fact_campaign_daily
            WHERE profile_id = ?
              AND date >= ?
              AND date <= ?
            ORDER BY campaign_id, date;
            """,
            [profile_id, start, end],
            "campaign daily facts",
        )

    def search_term_daily(self, profile_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT date, campaign_id, ad_group_id, keyword_id, keyword_text,
                   search_term, match_type, clicks, cost_micros,
                   attributed_conversions_7d, attributed_sales_7d_micros
            FROM fact_search_term_daily
            WHERE profile_id = ?
              AND date >= ?
              AND date <= ?
            ORDER BY campaign_id, ad_group_id, search_term, date;
            """,
            [profile_id, start, end],
            "search term facts",
        )


class GovernanceStore:
    """Tenant settings, protection list, plan tier and applied-action counts."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def get_settings(self, profile_id: str) -> Optional[GovernanceSettings]:
        row = self.conn.execute(
            "SELECT * FROM governance_settings WHERE profile_id = ?;", [profile_id]
        ).fetchone()
        if row is None:
            return None
        cols = [c[0] for c in self.conn.description]
        r = dict(zip(cols, row))
        return GovernanceSettings(
            profile_id=profile_id,
            max_bid_change_percent=_safe_float(r.get("max_bid_change_percent"), 20.0),
            min_bid_micros=_safe_int(r.get("min_bid_micros"), 100_000),
            max_bid_micros=_safe_int(r.get("max_bid_micros"), 10_000_000),
            daily_spend_cap_micros=r.get("daily_spend_cap_micros"),
            monthly_spend_cap_micros=r.get("monthly_spend_cap_micros"),
            max_actions_per_day=_safe_int(r.get("max_actions_per_day"), 100),
            require_approval_above_micros=_safe_int(r.get("require_approval_above_micros"), 1_000_000),
            automation_paused=bool(r.get("automation_paused")),
            automation_paused_reason=r.get("automation_paused_reason"),
        )

    def get_protection(self, profile_id: str, entity_type: str, entity_id: str) -> Optional[ProtectedEntity]:
        row = self.conn.execute(
            """
            SELECT entity_type, entity_id, reason
            FROM protected_entities
            WHERE profile_id = ?
              AND entity_type = ?
              AND entity_id = ?;
            """,
            [profile_id, entity_type, str(entity_id)],
        ).fetchone()
        if row is None:
            return None
        return ProtectedEntity(profile_id, EntityType(row[0]), row[1], row[2])

    def get_subscription(self, user_id: str) -> Tuple[Optional[str], Optional[str]]:
        """Returns (plan, status); both None when the user has no subscription row."""
        row = self.conn.execute(
            "SELECT plan, status FROM billing_subscriptions WHERE user_id = ?;", [user_id]
        ).fetchone()
        if row is None:
            return None, None
        return row[0], row[1]

    def count_applied_for_profile(self, profile_id: str, day: date) -> int:
        start, end = day_bounds(day)
        row = self.conn.execute(
            """
            SELECT COUNT(*)
            FROM action_queue
            WHERE profile_id = ?
              AND status = ?
              AND applied_at >= ?
              AND applied_at < ?;
            """,
            [profile_id, ActionStatus.APPLIED.value, start, end],
        ).fetchone()
        return int(row[0]) if row else 0

    def count_applied_for_rule(self, rule_id: str, day: date) -> int:
        start, end = day_bounds(day)
        row = self.conn.execute(
            """
            SELECT COUNT(*)
            FROM action_queue
            WHERE rule_id = ?
              AND status = ?
              AND created_at >= ?
              AND created_at < ?;
            """,
            [rule_id, ActionStatus.APPLIED.value, start, end],
        ).fetchone()
        return int(row[0]) if row else 0


class ResultStore:
    """Writes alerts, queued actions and rule runs. Write failures raise PersistenceError."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def _write_batch(self, sql: str, tuples: List[Tuple[Any, ...]], what: str) -> None:
        self.conn.begin()
        try:
            self.conn.executemany(sql, tuples)
            self.conn.commit()
        except duckdb.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Failed to insert {what}: {e}", original_error=e) from e

    def insert_alerts(self, alerts: Sequence[Alert]) -> int:
        if not alerts:
            return 0
        tuples = [
            (
                str(uuid.uuid4()),
                a.rule_id,
                a.profile_id,
                a.entity_type.value,
                a.entity_id,
                a.level.value,
                a.title,
                a.message,
                to_json(a.data),
                a.created_at,
            )
            for a in alerts
        ]
        cols_sql = ", ".join(ALERT_COLS)
        qmarks = ", ".join(["?"] * len(ALERT_COLS))
        self._write_batch(f"INSERT INTO alerts ({cols_sql}) VALUES ({qmarks});", tuples, "alerts")
        return len(tuples)

    def _count_ids(self, table: str, ids: Sequence[str]) -> int:
        placeholders = ", ".join(["?"] * len(ids))
        try:
            row = self.conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE id IN ({placeholders});", list(ids)
            ).fetchone()
        except duckdb.Error as e:
            raise PersistenceError(f"Failed to count inserted {table} rows: {e}", original_error=e) from e
        return int(row[0]) if row else 0

    def existing_keys(self, keys: Sequence[str]) -> set:
        if not keys:
            return set()
        placeholders = ", ".join(["?"] * len(keys))
        rows = self.conn.execute(
            f"SELECT idempotency_key FROM action_queue WHERE idempotency_key IN ({placeholders});",
            list(keys),
        ).fetchall()
        return {r[0] for r in rows}

    def enqueue_actions(self, actions: Sequence[Action]) -> int:
        """
        Insert queued actions, ignoring any whose idempotency key already exists.

        Returns the number of rows this call actually inserted. The UNIQUE
        constraint on idempotency_key is what holds across overlapping cycles,
        so the count is taken from the inserted ids rather than the batch size.
        """
        if not actions:
            return 0

        seen = self.existing_keys([a.idempotency_key for a in actions])
        fresh: List[Action] = []
        for a in actions:
            if a.idempotency_key in seen:
                continue
            seen.add(a.idempotency_key)
            fresh.append(a)

        if not fresh:
            return 0

        now = utc_now()
        tuples = [
            (
                str(uuid.uuid4()),
                a.rule_id,
                a.profile_id,
                a.action_type.value,
                a.entity_type.value,
                a.entity_id,
                to_json(a.payload),
                a.idempotency_key,
                ActionStatus.QUEUED.value,
                now,
                None,
            )
            for a in fresh
        ]
        cols_sql = ", ".join(ACTION_COLS)
        qmarks = ", ".join(["?"] * len(ACTION_COLS))
        self._write_batch(
            f"INSERT INTO action_queue ({cols_sql}) VALUES ({qmarks}) ON CONFLICT (idempotency_key) DO NOTHING;",
            tuples,
            "actions",
        )
        return self._count_ids("action_queue", [t[0] for t in tuples])

    def start_run(self, rule_id: str, profile_id: str) -> RuleRun:
        run = RuleRun(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            profile_id=profile_id,
            started_at=utc_now(),
        )
        try:
            self.conn.execute(
                """
                INSERT INTO automation_rule_runs (id, rule_id, profile_id, started_at, status)
                VALUES (?, ?, ?, ?, ?);
                """,
                [run.id, run.rule_id, run.profile_id, run.started_at, run.status.value],
            )
        except duckdb.Error as e:
            raise PersistenceError(f"Failed to create rule run: {e}", original_error=e) from e
        return run

    def finish_run(self, run: RuleRun) -> None:
        if run.finished_at is None:
            run.finished_at = utc_now()
        try:
            self.conn.execute(
                """
                UPDATE automation_rule_runs
                SET finished_at = ?,
                    status = ?,
                    alerts_created = ?,
                    actions_enqueued = ?,
                    error = ?
                WHERE id = ?;
                """,
                [
                    run.finished_at,
                    run.status.value,
                    run.alerts_created,
                    run.actions_enqueued,
                    run.error,
                    run.id,
                ],
            )
        except duckdb.Error as e:
            raise PersistenceError(f"Failed to finalize rule run {run.id}: {e}", original_error=e) from e


def window_start(day: date, days: int) -> date:
    """First day of an inclusive window of `days` days ending on `day`."""
    return day - timedelta(days=max(days, 1) - 1)
