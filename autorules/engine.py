"""
Rule Engine — Runs one evaluation cycle over every enabled automation rule.

Flow per rule (strictly sequential, one rule never affects another):
  1. Kill switch        → skip (no run record)
     Unknown rule type  → skip (no run record)
  2. Entitlement        → skip (no run record)
  3. Throttle           → skip (no run record)
  4. Start run record
  5. Load facts + evaluate
  6. Governance filter/adjust, daily quota
  7. Persist alerts (always) and actions (unless dry_run)
  8. Finalize run record

Errors inside a rule land in the cycle summary; a broken warehouse aborts the
cycle with ConfigurationError before any rule runs.
"""
from __future__ import annotations

import uuid
from datetime import date
from typing import Any, Dict, List, Optional

import duckdb

from .config_models import parse_throttle
from .entitlements import effective_plan, is_rule_type_allowed
from .errors import FactReadError, PerRuleError, PersistenceError
from .governance import GovernanceCache, GovernanceGuard
from .logging_config import setup_logging
from .models import (
    Action,
    AlertLevel,
    AutomationRule,
    CycleSummary,
    FactWindow,
    RuleMode,
    RuleRun,
    RunStatus,
)
from .rules import RuleContext, evaluator_for
from .stores import FactStore, GovernanceStore, ResultStore, RuleStore
from .warehouse import check_warehouse, from_json, utc_now

logger = setup_logging(__name__)


def rule_from_row(row: Dict[str, Any]) -> AutomationRule:
    """Build an AutomationRule from an automation_rules row. Bad values raise ValueError."""
    params = from_json(row.get("params")) or {}
    if not isinstance(params, dict):
        raise ValueError(f"params must be an object, got {type(params).__name__}")

    return AutomationRule(
        id=str(row["id"]),
        user_id=str(row.get("user_id") or ""),
        profile_id=str(row["profile_id"]),
        name=str(row.get("name") or ""),
        rule_type=str(row.get("rule_type") or ""),
        mode=RuleMode(str(row.get("mode") or RuleMode.DRY_RUN.value)),
        enabled=bool(row.get("enabled", True)),
        severity=AlertLevel(str(row.get("severity") or AlertLevel.INFO.value)),
        params=params,
        throttle=parse_throttle(from_json(row.get("throttle"))),
    )


class CycleRunner:
    """One invocation of the rules engine. Holds the invocation-scoped governance cache."""

    def __init__(self, conn: duckdb.DuckDBPyConnection, as_of: Optional[date] = None):
        self.conn = conn
        self.eval_date = as_of or utc_now().date()
        self.cycle_id = str(uuid.uuid4())

        self.rules = RuleStore(conn)
        self.facts = FactStore(conn)
        self.governance = GovernanceStore(conn)
        self.results = ResultStore(conn)

        # Fresh per invocation; discarded with the runner
        self.cache = GovernanceCache()
        self.summary = CycleSummary()

    def run(self) -> CycleSummary:
        check_warehouse(self.conn)
        rows = self.rules.load_enabled_rules()

        logger.info(
            f"Rules engine cycle {self.cycle_id} started for {self.eval_date.isoformat()}: "
            f"{len(rows)} enabled rules"
        )

        for row in rows:
            rule_id = str(row.get("id"))
            try:
                self._process_rule(row)
            except Exception as e:
                err = PerRuleError.wrap(rule_id, e)
                logger.error(f"Error processing rule {rule_id}: {err.message}")
                self.summary.errors.append(err.to_dict())

        s = self.summary
        logger.info(
            f"Rules engine cycle {self.cycle_id} completed: {s.processed_rules} processed, "
            f"{s.total_alerts} alerts, {s.total_actions} actions, "
            f"{len(s.skipped)} skipped, {len(s.errors)} errors"
        )
        return s

    # ─────────────────────────────────────────────────────────
    # Per rule
    # ─────────────────────────────────────────────────────────
    def _skip(self, rule: AutomationRule, reason: str, quiet: bool = False) -> None:
        msg = f"Rule {rule.id} ({rule.rule_type}, profile {rule.profile_id}) skipped: {reason}"
        if quiet:
            logger.debug(msg)
        else:
            logger.warning(msg)
        self.summary.skipped.append({"rule_id": rule.id, "reason": reason})

    def _process_rule(self, row: Dict[str, Any]) -> None:
        rule = rule_from_row(row)
        guard = GovernanceGuard(self.governance, self.cache, rule.profile_id, self.eval_date)

        pause = guard.is_automation_paused()
        if pause.paused:
            self._skip(rule, f"automation paused ({pause.reason})")
            return

        kind = rule.kind
        if kind is None:
            self._skip(rule, f"unknown rule type '{rule.rule_type}'")
            return

        plan_row, status = self.governance.get_subscription(rule.user_id)
        plan = effective_plan(plan_row, status)
        if not is_rule_type_allowed(plan, kind):
            self._skip(rule, f"plan '{plan}' does not include {kind.value}", quiet=True)
            return

        if rule.throttle is not None:
            used = self.governance.count_applied_for_rule(rule.id, self.eval_date)
            if used >= rule.throttle.max_actions_per_day:
                self._skip(
                    rule,
                    f"throttled ({used}/{rule.throttle.max_actions_per_day} actions applied today)",
                )
                return

        run = self.results.start_run(rule.id, rule.profile_id)
        try:
            self._evaluate_and_persist(rule, kind, guard, run)
        except Exception as e:
            run.status = RunStatus.FAILED
            run.error = str(e) or type(e).__name__
            self._finish_run(run)
            raise

        self._finish_run(run)

        self.summary.processed_rules += 1
        self.summary.total_alerts += run.alerts_created
        self.summary.total_actions += run.actions_enqueued

        logger.info(
            f"Rule {rule.id} processed: {run.alerts_created} alerts, "
            f"{run.actions_enqueued} actions ({run.status.value})"
        )

    def _evaluate_and_persist(self, rule: AutomationRule, kind, guard: GovernanceGuard, run: RuleRun) -> None:
        evaluator = evaluator_for(kind)

        try:
            facts = evaluator.load_facts(self.facts, rule, self.eval_date)
        except FactReadError as e:
            # Not retried: evaluates as "no data", flagged on the run record
            logger.warning(f"Rule {rule.id}: {e.message}; evaluating without data")
            facts = FactWindow()
            run.status = RunStatus.DATA_UNAVAILABLE
            run.error = e.message

        ctx = RuleContext(rule=rule, facts=facts, eval_date=self.eval_date, now=utc_now())
        result = evaluator.evaluate(ctx)

        actions = self._vet_actions(rule, guard, result.actions)

        write_errors: List[str] = []
        try:
            run.alerts_created = self.results.insert_alerts(result.alerts)
        except PersistenceError as e:
            logger.error(f"Failed to insert alerts for rule {rule.id}: {e.message}")
            write_errors.append(e.message)

        if actions and rule.mode != RuleMode.DRY_RUN:
            try:
                run.actions_enqueued = self.results.enqueue_actions(actions)
            except PersistenceError as e:
                logger.error(f"Failed to insert actions for rule {rule.id}: {e.message}")
                write_errors.append(e.message)

            duplicates = len(actions) - run.actions_enqueued
            if duplicates > 0 and not write_errors:
                logger.info(f"Rule {rule.id}: {duplicates} actions already queued today")

        if write_errors:
            run.status = RunStatus.PARTIAL
            run.error = "; ".join(filter(None, [run.error] + write_errors))

    def _vet_actions(self, rule: AutomationRule, guard: GovernanceGuard, candidates: List[Action]) -> List[Action]:
        if not candidates:
            return []

        actions = guard.filter_and_adjust(candidates)
        dropped = len(candidates) - len(actions)
        if dropped:
            logger.warning(f"Rule {rule.id}: {dropped} actions dropped on protected entities")

        if actions:
            quota = guard.check_action_quota()
            if not quota.allowed:
                logger.warning(f"Rule {rule.id}: {len(actions)} actions not queued: {quota.reason}")
                return []

        return actions

    def _finish_run(self, run: RuleRun) -> None:
        try:
            self.results.finish_run(run)
        except PersistenceError as e:
            # Run telemetry is lost for this rule; the rule's outputs stand
            logger.error(e.message)


def run_cycle(conn: duckdb.DuckDBPyConnection, as_of: Optional[date] = None) -> CycleSummary:
    """Process every enabled rule for every tenant once."""
    return CycleRunner(conn, as_of=as_of).run()
