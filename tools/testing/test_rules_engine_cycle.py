"""
End-to-end cycles against an in-memory warehouse.

Covers the gate order (kill switch, entitlement, throttle), per-rule error
isolation, dry run, idempotent re-runs and run telemetry.
"""
import json

import duckdb
import pytest

from conftest import TODAY, add_applied_action, add_rule, add_tenant, budget_row, count, term_row
from autorules.engine import CycleRunner, run_cycle
from autorules.errors import ConfigurationError, FactReadError, PersistenceError
from autorules.models import RuleType
from autorules.stores import FactStore, ResultStore
from autorules.templates import template_for
from autorules.warehouse import (
    add_protected_entity,
    insert_budget_usage,
    insert_search_term_daily,
    upsert_governance_settings,
)


def _depleting_budget(con, profile_id="p1", campaign_id="c1"):
    insert_budget_usage(con, [budget_row(campaign_id, 8_500_000, profile_id=profile_id)])


def _runs(con):
    cur = con.execute("SELECT rule_id, status, alerts_created, actions_enqueued, error FROM automation_rule_runs;")
    cols = [c[0] for c in cur.description]
    return [dict(zip(cols, r)) for r in cur.fetchall()]


def _skip_reasons(summary):
    return {s["rule_id"]: s["reason"] for s in summary.skipped}


# ─────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────
def test_auto_rule_queues_action_and_records_run(con):
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion", params={"percentThreshold": 80})
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)

    assert summary.processed_rules == 1
    assert summary.total_alerts == 1
    assert summary.total_actions == 1
    assert summary.errors == []

    assert count(con, "alerts", "level = 'critical'") == 1
    row = con.execute("SELECT action_type, entity_type, entity_id, status, payload FROM action_queue;").fetchone()
    assert row[:4] == ("pause_campaign", "campaign", "c1", "queued")
    payload = json.loads(row[4])
    # $1.50 of remaining budget is above the default $1.00 approval threshold
    assert payload["requires_approval"] is True

    [run] = _runs(con)
    assert run == {"rule_id": "r1", "status": "success", "alerts_created": 1, "actions_enqueued": 1, "error": None}


def test_rerun_same_day_does_not_duplicate_actions(con):
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion")
    _depleting_budget(con)

    first = run_cycle(con, as_of=TODAY)
    second = run_cycle(con, as_of=TODAY)

    assert first.total_actions == 1
    assert second.total_actions == 0
    assert second.total_alerts == 1
    assert count(con, "action_queue") == 1
    assert count(con, "automation_rule_runs") == 2


def test_default_template_alerts_on_morning_crossing(con):
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion", params=template_for(RuleType.BUDGET_DEPLETION)["params"])
    insert_budget_usage(con, [budget_row("c1", 9_000_000, hour=10), budget_row("c1", 10_000_000, hour=17)])

    summary = run_cycle(con, as_of=TODAY)

    assert summary.total_alerts == 1
    assert count(con, "alerts") == 1
    assert count(con, "action_queue") == 1


def test_dry_run_persists_alerts_only(con):
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion", mode="dry_run")
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)

    assert summary.total_alerts == 1
    assert summary.total_actions == 0
    assert count(con, "alerts") == 1
    assert count(con, "action_queue") == 0


def test_disabled_rules_are_not_loaded(con):
    add_rule(con, "r1", "budget_depletion", enabled=False)
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)
    assert summary.processed_rules == 0
    assert summary.skipped == []


def test_legacy_rule_tag_is_evaluated(con):
    add_tenant(con, plan="pro")
    add_rule(con, "r1", "st_prune", params={"minClicks": 20})
    insert_search_term_daily(con, [term_row("free running shoes", 27, 11.0, 0, 0.0)])

    summary = run_cycle(con, as_of=TODAY)
    assert summary.processed_rules == 1
    assert count(con, "action_queue", "action_type = 'add_negative'") == 1


def test_harvest_bid_clamped_by_tenant_guardrails(con):
    add_tenant(con, plan="pro")
    upsert_governance_settings(con, {"profile_id": "p1", "max_bid_micros": 1_000_000})
    add_rule(con, "r1", "search_term_harvest")
    insert_search_term_daily(con, [term_row("trail running shoes", 8, 12.0, 3, 60.0)])

    run_cycle(con, as_of=TODAY)

    payload = json.loads(con.execute("SELECT payload FROM action_queue;").fetchone()[0])
    assert payload["bid_micros"] == 1_000_000
    assert payload["proposed_bid_micros"] == 1_500_000
    assert payload["guardrail_reason"] == "Bid capped to maximum $1.00"


# ─────────────────────────────────────────────────────────────
# Gates
# ─────────────────────────────────────────────────────────────
def test_kill_switch_skips_all_rules_for_profile(con):
    add_tenant(con)
    upsert_governance_settings(con, {"profile_id": "p1", "automation_paused": True, "automation_paused_reason": "audit"})
    add_rule(con, "r1", "budget_depletion")
    add_rule(con, "r2", "spend_spike")
    add_rule(con, "other", "budget_depletion", profile_id="p2")
    _depleting_budget(con)
    _depleting_budget(con, profile_id="p2")

    summary = run_cycle(con, as_of=TODAY)

    reasons = _skip_reasons(summary)
    assert set(reasons) == {"r1", "r2"}
    assert "automation paused (audit)" in reasons["r1"]
    assert summary.processed_rules == 1
    assert [r["rule_id"] for r in _runs(con)] == ["other"]
    assert count(con, "alerts", "profile_id = 'p1'") == 0


def test_free_plan_cannot_run_search_term_rules(con):
    add_tenant(con, plan="free")
    add_rule(con, "r1", "search_term_harvest")
    add_rule(con, "r2", "budget_depletion")
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)

    assert "r1" in _skip_reasons(summary)
    assert summary.processed_rules == 1
    assert [r["rule_id"] for r in _runs(con)] == ["r2"]


def test_missing_or_lapsed_subscription_falls_back_to_free(con):
    add_tenant(con, user_id="lapsed", plan="pro", status="canceled")
    add_rule(con, "r1", "search_term_prune", user_id="lapsed")
    add_rule(con, "r2", "search_term_prune", user_id="nobody")

    summary = run_cycle(con, as_of=TODAY)

    assert set(_skip_reasons(summary)) == {"r1", "r2"}
    assert count(con, "automation_rule_runs") == 0


def test_unknown_rule_type_is_skipped(con):
    add_tenant(con)
    add_rule(con, "r1", "bid_optimizer")

    summary = run_cycle(con, as_of=TODAY)

    assert "unknown rule type" in _skip_reasons(summary)["r1"]
    assert summary.errors == []
    assert count(con, "automation_rule_runs") == 0


def test_throttled_rule_is_skipped(con):
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion", throttle={"cooldownHours": 24, "maxActionsPerDay": 2})
    add_applied_action(con, "a1", "r1")
    add_applied_action(con, "a2", "r1")
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)

    assert "throttled (2/2" in _skip_reasons(summary)["r1"]
    assert count(con, "automation_rule_runs") == 0


def test_throttle_below_limit_runs(con):
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion", throttle={"maxActionsPerDay": 2})
    add_applied_action(con, "a1", "r1")
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)
    assert summary.processed_rules == 1


# ─────────────────────────────────────────────────────────────
# Governance inside a run
# ─────────────────────────────────────────────────────────────
def test_protected_campaign_keeps_alert_drops_action(con):
    add_tenant(con)
    add_protected_entity(con, "p1", "campaign", "c1", "brand")
    add_rule(con, "r1", "budget_depletion")
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)

    assert summary.total_alerts == 1
    assert summary.total_actions == 0
    assert count(con, "action_queue") == 0
    assert _runs(con)[0]["status"] == "success"


def test_exhausted_quota_drops_actions(con):
    add_tenant(con)
    upsert_governance_settings(con, {"profile_id": "p1", "max_actions_per_day": 1})
    add_applied_action(con, "a1", "some-other-rule")
    add_rule(con, "r1", "budget_depletion")
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)

    assert summary.total_alerts == 1
    assert summary.total_actions == 0
    assert count(con, "action_queue", "status = 'queued'") == 0


def test_governance_settings_cached_per_invocation(con):
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion")
    add_rule(con, "r2", "spend_spike")
    add_rule(con, "r3", "budget_depletion", profile_id="p2")

    runner = CycleRunner(con, as_of=TODAY)
    runner.run()

    assert "p1" in runner.cache and "p2" in runner.cache
    assert len(runner.cache) == 2
    assert CycleRunner(con, as_of=TODAY).cache is not runner.cache


# ─────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────
def test_bad_params_isolated_to_one_rule(con):
    add_tenant(con)
    add_rule(con, "bad", "budget_depletion", params={"percentThreshold": "lots"})
    add_rule(con, "good", "budget_depletion")
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)

    assert [e["rule_id"] for e in summary.errors] == ["bad"]
    assert "percentThreshold" in summary.errors[0]["message"]
    assert summary.processed_rules == 1
    assert summary.total_actions == 1

    statuses = {r["rule_id"]: r["status"] for r in _runs(con)}
    assert statuses == {"bad": "failed", "good": "success"}


def test_unreadable_row_is_a_rule_error(con):
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion", mode="yolo")

    summary = run_cycle(con, as_of=TODAY)

    assert [e["rule_id"] for e in summary.errors] == ["r1"]
    assert summary.processed_rules == 0


def test_fact_read_failure_evaluates_with_no_data(con, monkeypatch):
    def boom(self, profile_id, day):
        raise FactReadError("Failed to read budget usage: connection reset")

    monkeypatch.setattr(FactStore, "budget_usage_for_day", boom)
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion")

    summary = run_cycle(con, as_of=TODAY)

    assert summary.processed_rules == 1
    assert summary.total_alerts == 0
    assert summary.errors == []
    [run] = _runs(con)
    assert run["status"] == "data_unavailable"
    assert "connection reset" in run["error"]


def test_alert_write_failure_marks_run_partial(con, monkeypatch):
    def boom(self, alerts):
        raise PersistenceError("Failed to insert alerts: disk full")

    monkeypatch.setattr(ResultStore, "insert_alerts", boom)
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion")
    _depleting_budget(con)

    summary = run_cycle(con, as_of=TODAY)

    assert summary.processed_rules == 1
    assert summary.total_alerts == 0
    assert summary.total_actions == 1
    [run] = _runs(con)
    assert run["status"] == "partial"
    assert "disk full" in run["error"]


def test_missing_schema_aborts_cycle():
    conn = duckdb.connect(":memory:")
    try:
        with pytest.raises(ConfigurationError) as exc:
            run_cycle(conn, as_of=TODAY)
        assert "automation_rules" in exc.value.message
    finally:
        conn.close()


def test_summary_serializes(con):
    add_tenant(con)
    add_rule(con, "r1", "budget_depletion")
    _depleting_budget(con)

    data = run_cycle(con, as_of=TODAY).to_dict()
    assert set(data) == {"processed_rules", "total_alerts", "total_actions", "errors", "skipped"}
    json.dumps(data)
