"""
Rules engine data models — AutomationRule, Alert, Action, GovernanceSettings, RuleRun.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RuleType(str, Enum):
    BUDGET_DEPLETION = "budget_depletion"
    SPEND_SPIKE = "spend_spike"
    SEARCH_TERM_HARVEST = "search_term_harvest"
    SEARCH_TERM_PRUNE = "search_term_prune"

    @classmethod
    def parse(cls, tag: Any) -> Optional["RuleType"]:
        """Map a stored rule_type tag to a variant. Unknown tags give None."""
        if isinstance(tag, RuleType):
            return tag
        key = str(tag or "").strip().lower()
        key = _LEGACY_RULE_TAGS.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return None


# Tags written by older rule templates
_LEGACY_RULE_TAGS = {
    "st_harvest": "search_term_harvest",
    "st_prune": "search_term_prune",
}


class RuleMode(str, Enum):
    DRY_RUN = "dry_run"
    SUGGESTION = "suggestion"
    AUTO = "auto"


class AlertLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    CRITICAL = "critical"


class EntityType(str, Enum):
    CAMPAIGN = "campaign"
    AD_GROUP = "ad_group"
    KEYWORD = "keyword"
    TARGET = "target"
    SEARCH_TERM = "search_term"


class ActionType(str, Enum):
    PAUSE_CAMPAIGN = "pause_campaign"
    CREATE_KEYWORD = "create_keyword"
    ADD_NEGATIVE = "add_negative"
    ADJUST_BID = "adjust_bid"


class ActionStatus(str, Enum):
    QUEUED = "queued"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"                 # some writes failed
    DATA_UNAVAILABLE = "data_unavailable"  # fact read failed, evaluated with no data


@dataclass(frozen=True)
class RuleThrottle:
    cooldown_hours: int = 24
    max_actions_per_day: int = 100


@dataclass(frozen=True)
class AutomationRule:
    """One tenant-owned automation rule as stored in automation_rules."""
    id: str
    user_id: str
    profile_id: str
    name: str
    rule_type: str                      # raw tag; see RuleType.parse
    mode: RuleMode
    enabled: bool
    severity: AlertLevel
    params: Dict[str, Any] = field(default_factory=dict)
    throttle: Optional[RuleThrottle] = None

    @property
    def kind(self) -> Optional[RuleType]:
        return RuleType.parse(self.rule_type)

    @property
    def is_auto(self) -> bool:
        return self.mode == RuleMode.AUTO


@dataclass(frozen=True)
class Alert:
    """Display-only finding. Never gates downstream behavior."""
    rule_id: str
    profile_id: str
    entity_type: EntityType
    entity_id: str
    level: AlertLevel
    title: str
    message: str
    data: Dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class Action:
    """A queued mutation request. Status transitions belong to the applier."""
    rule_id: str
    profile_id: str
    action_type: ActionType
    entity_type: EntityType             # what governance checks protection against
    entity_id: str
    payload: Dict[str, Any]             # entity refs, reason, trigger metrics, impact, bid_micros?
    idempotency_key: str
    status: ActionStatus = ActionStatus.QUEUED

    @property
    def bid_micros(self) -> Optional[int]:
        value = self.payload.get("bid_micros")
        return int(value) if value is not None else None


@dataclass(frozen=True)
class GovernanceSettings:
    """Per-tenant guardrails. Defaults apply when a tenant has no row."""
    profile_id: str
    max_bid_change_percent: float = 20.0
    min_bid_micros: int = 100_000           # $0.10
    max_bid_micros: int = 10_000_000        # $10.00
    daily_spend_cap_micros: Optional[int] = None
    monthly_spend_cap_micros: Optional[int] = None
    max_actions_per_day: int = 100
    require_approval_above_micros: int = 1_000_000  # $1.00
    automation_paused: bool = False
    automation_paused_reason: Optional[str] = None

    @classmethod
    def defaults(cls, profile_id: str) -> "GovernanceSettings":
        return cls(profile_id=profile_id)


@dataclass(frozen=True)
class ProtectedEntity:
    profile_id: str
    entity_type: EntityType
    entity_id: str
    reason: Optional[str] = None


@dataclass
class RuleRun:
    """Per-rule-per-cycle telemetry row."""
    id: str
    rule_id: str
    profile_id: str
    started_at: datetime
    status: RunStatus = RunStatus.SUCCESS
    finished_at: Optional[datetime] = None
    alerts_created: int = 0
    actions_enqueued: int = 0
    error: Optional[str] = None


@dataclass
class EvaluationResult:
    alerts: List[Alert] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)


@dataclass
class FactWindow:
    """Recent fact rows an evaluator works on (rows are plain dicts)."""
    budget_usage: List[Dict[str, Any]] = field(default_factory=list)
    campaign_daily: List[Dict[str, Any]] = field(default_factory=list)
    search_terms: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class CycleSummary:
    processed_rules: int = 0
    total_alerts: int = 0
    total_actions: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _safe_float(x: Any, default: float = 0.0) -> float:
    if x is None:
        return default
    try:
        return float(x)
    except (TypeError, ValueError):
        return default


def _safe_int(x: Any, default: int = 0) -> int:
    if x is None:
        return default
    try:
        return int(x)
    except (TypeError, ValueError):
        return default
