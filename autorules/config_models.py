from pydantic import BaseModel, Field, ValidationError, field_validator
from typing import Any, Dict, List, Literal, Optional, Type

from .models import RuleThrottle, RuleType


class BudgetDepletionParams(BaseModel):
    percentThreshold: float = Field(default=80.0, gt=0)
    beforeHourLocal: Optional[int] = None

    @field_validator("beforeHourLocal")
    @classmethod
    def hour_in_range(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 0 <= v <= 23:
            raise ValueError("beforeHourLocal must be between 0 and 23")
        return v


class SpendSpikeParams(BaseModel):
    lookbackDays: int = Field(default=7, ge=1)
    stdevMultiplier: float = Field(default=2.0, ge=0)
    minSpend: float = Field(default=5.0, ge=0)


class SearchTermHarvestParams(BaseModel):
    windowDays: int = Field(default=14, ge=1)
    minConvs: float = Field(default=2, ge=0)
    maxAcos: float = Field(default=35.0, gt=0)
    exactTo: str = "same_ad_group"

    @field_validator("maxAcos")
    @classmethod
    def acos_as_percent(cls, v: float) -> float:
        # Stored templates use a ratio (0.35); thresholds compare in percent
        if v < 1:
            return v * 100
        return v


class SearchTermPruneParams(BaseModel):
    windowDays: int = Field(default=14, ge=1)
    minClicks: int = Field(default=20, ge=0)
    minSpend: float = Field(default=10.0, ge=0)
    maxConvs: float = Field(default=0, ge=0)
    negateScope: Literal["ad_group", "campaign"] = "ad_group"


class RuleThrottleConfig(BaseModel):
    cooldownHours: int = Field(default=24, ge=0)
    maxActionsPerDay: int = Field(default=100, ge=0)

    def to_throttle(self) -> RuleThrottle:
        return RuleThrottle(
            cooldown_hours=self.cooldownHours,
            max_actions_per_day=self.maxActionsPerDay,
        )


PARAM_MODELS: Dict[RuleType, Type[BaseModel]] = {
    RuleType.BUDGET_DEPLETION: BudgetDepletionParams,
    RuleType.SPEND_SPIKE: SpendSpikeParams,
    RuleType.SEARCH_TERM_HARVEST: SearchTermHarvestParams,
    RuleType.SEARCH_TERM_PRUNE: SearchTermPruneParams,
}


class RuleDefinition(BaseModel):
    """A rule as written in a YAML rules file (see `autorules.cli load-rules`)."""
    id: Optional[str] = None
    user_id: str
    profile_id: str
    rule_type: str
    name: Optional[str] = None
    mode: Literal["dry_run", "suggestion", "auto"] = "dry_run"
    enabled: bool = True
    severity: Optional[Literal["info", "warn", "critical"]] = None
    params: Optional[Dict[str, Any]] = None
    throttle: Optional[RuleThrottleConfig] = None

    @field_validator("rule_type")
    @classmethod
    def known_rule_type(cls, v: str) -> str:
        kind = RuleType.parse(v)
        if kind is None:
            raise ValueError(f"unknown rule_type: {v}")
        return kind.value


class RulesFile(BaseModel):
    rules: List[RuleDefinition] = Field(default_factory=list)


def parse_rule_params(rule_type: RuleType, params: Optional[Dict[str, Any]]) -> BaseModel:
    # Raises ValidationError if invalid (recorded as a per-rule error)
    return PARAM_MODELS[rule_type].model_validate(params or {})


def parse_throttle(data: Any) -> Optional[RuleThrottle]:
    if data is None:
        return None
    return RuleThrottleConfig.model_validate(data).to_throttle()


def parse_rules_file(data: dict) -> RulesFile:
    return RulesFile.model_validate(data)


__all__ = [
    "BudgetDepletionParams",
    "SpendSpikeParams",
    "SearchTermHarvestParams",
    "SearchTermPruneParams",
    "RuleThrottleConfig",
    "RuleDefinition",
    "RulesFile",
    "PARAM_MODELS",
    "ValidationError",
    "parse_rule_params",
    "parse_throttle",
    "parse_rules_file",
]
