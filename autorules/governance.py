"""
Governance guardrails with logging.

Enforces the tenant's automation guardrails before anything is queued:
kill switch, protected entities, daily action quota, bid clamps and the
approval threshold. Guardrail drops and adjustments are logged at WARNING.

Settings are cached in a GovernanceCache that the orchestrator creates for one
invocation and throws away at the end of it.
"""

from dataclasses import dataclass, replace
from datetime import date
from typing import Dict, List, Optional

from .logging_config import setup_logging
from .models import Action, EntityType, GovernanceSettings
from .stores import GovernanceStore

logger = setup_logging(__name__)


@dataclass(frozen=True)
class PauseState:
    paused: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ProtectionState:
    protected: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class QuotaState:
    allowed: bool
    used: int
    limit: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class BidAdjustment:
    adjusted_bid_micros: int
    was_adjusted: bool
    reason: Optional[str] = None


class GovernanceCache:
    """Per-invocation cache of tenant settings. Populated lazily, never shared across cycles."""

    def __init__(self):
        self._settings: Dict[str, GovernanceSettings] = {}

    def settings_for(self, store: GovernanceStore, profile_id: str) -> GovernanceSettings:
        cached = self._settings.get(profile_id)
        if cached is not None:
            return cached

        settings = store.get_settings(profile_id)
        if settings is None:
            logger.debug(f"Profile {profile_id}: no governance row, using defaults")
            settings = GovernanceSettings.defaults(profile_id)

        self._settings[profile_id] = settings
        return settings

    def __contains__(self, profile_id: str) -> bool:
        return profile_id in self._settings

    def __len__(self) -> int:
        return len(self._settings)


def _dollars(micros: int) -> str:
    return f"${micros / 1_000_000:.2f}"


def clamp_bid(
    settings: GovernanceSettings,
    current_bid_micros: Optional[int],
    proposed_bid_micros: int,
) -> BidAdjustment:
    """
    Bid guardrail, in order:
      1. clamp to [min_bid_micros, max_bid_micros]
      2. if a current bid exists and the change exceeds max_bid_change_percent,
         move current by exactly that percentage towards the proposal
      3. re-apply the absolute clamp
    """
    lo, hi = settings.min_bid_micros, settings.max_bid_micros
    final_bid = int(round(proposed_bid_micros))
    was_adjusted = False
    reason: Optional[str] = None

    if final_bid < lo:
        final_bid = lo
        was_adjusted = True
        reason = f"Bid raised to minimum {_dollars(lo)}"

    if final_bid > hi:
        final_bid = hi
        was_adjusted = True
        reason = f"Bid capped to maximum {_dollars(hi)}"

    if current_bid_micros and current_bid_micros > 0:
        change_pct = abs(final_bid - current_bid_micros) / current_bid_micros * 100
        max_pct = settings.max_bid_change_percent

        if change_pct > max_pct:
            max_change = current_bid_micros * (max_pct / 100)
            direction = 1 if final_bid > current_bid_micros else -1
            final_bid = int(round(current_bid_micros + direction * max_change))
            final_bid = max(lo, min(hi, final_bid))
            was_adjusted = True
            reason = f"Bid change limited to {max_pct:g}% (requested {change_pct:.0f}%)"

    return BidAdjustment(adjusted_bid_micros=final_bid, was_adjusted=was_adjusted, reason=reason)


class GovernanceGuard:
    """Guardrail checks for one tenant within one cycle."""

    def __init__(
        self,
        store: GovernanceStore,
        cache: GovernanceCache,
        profile_id: str,
        today: date,
    ):
        self.store = store
        self.cache = cache
        self.profile_id = profile_id
        self.today = today

    @property
    def settings(self) -> GovernanceSettings:
        return self.cache.settings_for(self.store, self.profile_id)

    def is_automation_paused(self) -> PauseState:
        s = self.settings
        if s.automation_paused:
            return PauseState(True, s.automation_paused_reason or "Automation paused by user")
        return PauseState(False)

    def is_entity_protected(self, entity_type: EntityType, entity_id: str) -> ProtectionState:
        kind = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)
        hit = self.store.get_protection(self.profile_id, kind, entity_id)
        if hit is None:
            return ProtectionState(False)
        return ProtectionState(True, hit.reason or f"{kind} is protected from automation")

    def check_action_quota(self) -> QuotaState:
        limit = self.settings.max_actions_per_day
        try:
            used = self.store.count_applied_for_profile(self.profile_id, self.today)
        except Exception as e:
            # Best-effort check: a failed count does not block automation
            logger.error(f"Profile {self.profile_id}: action quota query failed: {e}")
            return QuotaState(True, 0, limit)

        if used >= limit:
            return QuotaState(
                False,
                used,
                limit,
                f"Daily action limit ({limit}) reached for this profile",
            )
        return QuotaState(True, used, limit)

    def apply_bid_guardrails(
        self,
        current_bid_micros: Optional[int],
        proposed_bid_micros: int,
    ) -> BidAdjustment:
        return clamp_bid(self.settings, current_bid_micros, proposed_bid_micros)

    def requires_approval(self, impact_micros: Optional[float]) -> bool:
        if impact_micros is None:
            return False
        return impact_micros >= self.settings.require_approval_above_micros

    def _protection_for(self, action: Action) -> ProtectionState:
        state = self.is_entity_protected(action.entity_type, action.entity_id)
        if state.protected:
            return state

        # Actions below campaign level are also blocked by a protected parent campaign
        campaign_id = action.payload.get("campaign_id")
        if action.entity_type != EntityType.CAMPAIGN and campaign_id:
            return self.is_entity_protected(EntityType.CAMPAIGN, str(campaign_id))
        return state

    def filter_and_adjust(self, actions: List[Action]) -> List[Action]:
        """
        Drop actions on protected entities and clamp bids on the rest.

        Kept actions carry `requires_approval`, and `guardrail_reason` when
        their bid was adjusted.
        """
        kept: List[Action] = []

        for action in actions:
            protection = self._protection_for(action)
            if protection.protected:
                logger.warning(
                    f"Profile {self.profile_id}: dropped {action.action_type.value} on "
                    f"{action.entity_type.value} {action.entity_id}: {protection.reason}"
                )
                continue

            payload = dict(action.payload)

            proposed = action.bid_micros
            if proposed is not None:
                current = payload.get("current_bid_micros")
                adj = self.apply_bid_guardrails(int(current) if current else None, proposed)
                payload["bid_micros"] = adj.adjusted_bid_micros
                if adj.was_adjusted:
                    payload["proposed_bid_micros"] = proposed
                    payload["guardrail_reason"] = adj.reason
                    logger.warning(
                        f"Profile {self.profile_id}: {action.action_type.value} on "
                        f"{action.entity_type.value} {action.entity_id}: {adj.reason}"
                    )

            payload["requires_approval"] = self.requires_approval(payload.get("estimated_impact_micros"))
            kept.append(replace(action, payload=payload))

        return kept
