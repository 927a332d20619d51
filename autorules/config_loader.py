import uuid
import yaml
from pathlib import Path
from typing import Any, Dict, List

import duckdb

from .config_models import RuleDefinition, parse_rule_params, parse_rules_file
from .models import RuleType
from .templates import template_for
from .warehouse import upsert_rule

def load_rules_file(path: str) -> List[RuleDefinition]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Rules file not found: {path}")

    data = yaml.safe_load(p.read_text(encoding="utf8"))
    if not isinstance(data, dict):
        raise ValueError("Rules file must be a YAML mapping with a 'rules' list")

    return parse_rules_file(data).rules

def rule_row(defn: RuleDefinition) -> Dict[str, Any]:
    """Fill gaps from the rule type's template and validate params."""
    kind = RuleType(defn.rule_type)
    template = template_for(kind)

    params = {**template["params"], **(defn.params or {})}
    # Raises ValidationError for bad thresholds before anything is written
    parse_rule_params(kind, params)

    throttle = defn.throttle.model_dump() if defn.throttle else template["throttle"]

    return {
        "id": defn.id or str(uuid.uuid4()),
        "user_id": defn.user_id,
        "profile_id": defn.profile_id,
        "name": defn.name or template["name"],
        "rule_type": kind.value,
        "mode": defn.mode,
        "enabled": defn.enabled,
        "severity": defn.severity or template["severity"],
        "params": params,
        "throttle": throttle,
    }

def apply_rules(conn: duckdb.DuckDBPyConnection, definitions: List[RuleDefinition]) -> List[Dict[str, Any]]:
    rows = [rule_row(d) for d in definitions]
    for row in rows:
        upsert_rule(conn, row)
    return rows
