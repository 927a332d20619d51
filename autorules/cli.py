"""
Rules Engine CLI – Run one evaluation cycle against the warehouse.

Usage:
    python -m autorules.cli init-db --db warehouse.duckdb
    python -m autorules.cli seed-demo --db warehouse.duckdb
    python -m autorules.cli load-rules configs/rules.yaml --db warehouse.duckdb
    python -m autorules.cli run --db warehouse.duckdb --as-of 2026-10-17
    python -m autorules.cli templates
"""
from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .config_loader import apply_rules, load_rules_file
from .demo_data import seed_demo
from .engine import run_cycle
from .errors import ConfigurationError
from .logging_config import setup_logging
from .settings import get_settings
from .templates import all_templates
from .warehouse import connect_warehouse, init_warehouse, utc_now

logger = setup_logging(__name__)


def _parse_date(s: Optional[str]) -> Optional[date]:
    if not s:
        return None
    parts = s.split("-")
    if len(parts) != 3:
        raise ValueError("date must be YYYY-MM-DD")
    return date(int(parts[0]), int(parts[1]), int(parts[2]))


def cmd_run(args: argparse.Namespace) -> int:
    try:
        as_of = _parse_date(args.as_of)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    try:
        con = connect_warehouse(args.db)
    except ConfigurationError as e:
        logger.error(f"Rules engine failed: {e.message}")
        return 1

    try:
        summary = run_cycle(con, as_of=as_of)
    except ConfigurationError as e:
        logger.error(f"Rules engine failed: {e.message}")
        return 1
    finally:
        con.close()

    out = json.dumps(summary.to_dict(), indent=2, ensure_ascii=False, default=str)
    if args.output:
        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(out, encoding="utf-8")
        logger.info(f"Cycle summary saved: {out_path}")
    print(out)
    return 0


def cmd_init_db(args: argparse.Namespace) -> int:
    con = connect_warehouse(args.db, must_exist=False)
    try:
        init_warehouse(con)
    finally:
        con.close()
    logger.info(f"Warehouse schema ready: {args.db}")
    return 0


def cmd_seed_demo(args: argparse.Namespace) -> int:
    day = _parse_date(args.as_of) or utc_now().date()
    con = connect_warehouse(args.db, must_exist=False)
    try:
        init_warehouse(con)
        counts = seed_demo(con, day)
    finally:
        con.close()
    logger.info(f"Demo data seeded for {day.isoformat()}: {counts}")
    return 0


def cmd_load_rules(args: argparse.Namespace) -> int:
    try:
        definitions = load_rules_file(args.rules_file)
    except (FileNotFoundError, ValueError, ValidationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    try:
        con = connect_warehouse(args.db)
    except ConfigurationError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 1

    try:
        rows = apply_rules(con, definitions)
    except ValidationError as e:
        print(f"ERROR: invalid rule params:\n{e}", file=sys.stderr)
        return 1
    finally:
        con.close()

    for r in rows:
        print(f"  {r['id']}  {r['rule_type']:<20} {r['mode']:<10} profile={r['profile_id']}")
    logger.info(f"Loaded {len(rows)} rules from {args.rules_file}")
    return 0


def cmd_templates(args: argparse.Namespace) -> int:
    print(json.dumps(all_templates(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    default_db = get_settings().db_path

    p = argparse.ArgumentParser(prog="autorules")
    sub = p.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Evaluate every enabled rule once")
    p_run.add_argument("--db", default=default_db, help="Path to the DuckDB warehouse")
    p_run.add_argument("--as-of", default=None, help="Evaluation day (YYYY-MM-DD), default today (UTC)")
    p_run.add_argument("--output", default=None, help="Also write the cycle summary JSON here")
    p_run.set_defaults(func=cmd_run)

    p_init = sub.add_parser("init-db", help="Create the warehouse tables")
    p_init.add_argument("--db", default=default_db)
    p_init.set_defaults(func=cmd_init_db)

    p_seed = sub.add_parser("seed-demo", help="Load synthetic tenants, facts and rules")
    p_seed.add_argument("--db", default=default_db)
    p_seed.add_argument("--as-of", default=None, help="Day the synthetic facts end on (YYYY-MM-DD)")
    p_seed.set_defaults(func=cmd_seed_demo)

    p_load = sub.add_parser("load-rules", help="Upsert rules from a YAML file")
    p_load.add_argument("rules_file", help="Path to rules YAML (top-level 'rules' list)")
    p_load.add_argument("--db", default=default_db)
    p_load.set_defaults(func=cmd_load_rules)

    p_tpl = sub.add_parser("templates", help="Print the default rule templates")
    p_tpl.set_defaults(func=cmd_templates)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
