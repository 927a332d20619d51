"""
Governance guardrails: kill switch, protection, quota, bid clamps, approval.
"""
from datetime import date

from conftest import TODAY, add_applied_action
from autorules.governance import GovernanceCache, GovernanceGuard, clamp_bid
from autorules.idempotency import idempotency_key
from autorules.models import Action, ActionType, EntityType, GovernanceSettings
from autorules.stores import GovernanceStore
from autorules.warehouse import add_protected_entity, upsert_governance_settings


def _guard(con, profile_id="p1", cache=None):
    if cache is None:
        cache = GovernanceCache()
    return GovernanceGuard(GovernanceStore(con), cache, profile_id, TODAY)


def _action(action_type, entity_type, entity_id, **payload):
    return Action(
        rule_id="r1",
        profile_id="p1",
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload,
        idempotency_key=idempotency_key("p1", action_type, entity_id, TODAY),
    )


# ─────────────────────────────────────────────────────────────
# Bid clamps
# ─────────────────────────────────────────────────────────────
def test_bid_change_clamped_to_max_percent():
    settings = GovernanceSettings(profile_id="p1", max_bid_change_percent=20, min_bid_micros=1, max_bid_micros=1_000)
    adj = clamp_bid(settings, 100, 200)
    assert adj.adjusted_bid_micros == 120
    assert adj.was_adjusted is True
    assert adj.reason and "20%" in adj.reason


def test_bid_decrease_clamped_towards_proposal():
    settings = GovernanceSettings(profile_id="p1", max_bid_change_percent=20, min_bid_micros=1, max_bid_micros=1_000)
    adj = clamp_bid(settings, 100, 10)
    assert adj.adjusted_bid_micros == 80
    assert adj.was_adjusted


def test_bid_within_limits_untouched():
    settings = GovernanceSettings.defaults("p1")
    adj = clamp_bid(settings, 1_000_000, 1_100_000)
    assert adj.adjusted_bid_micros == 1_100_000
    assert adj.was_adjusted is False
    assert adj.reason is None


def test_absolute_bounds_without_current_bid():
    settings = GovernanceSettings.defaults("p1")
    low = clamp_bid(settings, None, 10)
    high = clamp_bid(settings, None, 50_000_000)
    assert low.adjusted_bid_micros == settings.min_bid_micros
    assert "minimum" in low.reason
    assert high.adjusted_bid_micros == settings.max_bid_micros
    assert "maximum" in high.reason


def test_percent_clamp_result_reclamped_to_absolute_bounds():
    settings = GovernanceSettings(profile_id="p1", max_bid_change_percent=50, min_bid_micros=100, max_bid_micros=140)
    adj = clamp_bid(settings, 120, 1_000)
    assert adj.adjusted_bid_micros == 140


def test_bid_guardrail_invariant_over_grid():
    settings = GovernanceSettings(
        profile_id="p1", max_bid_change_percent=25, min_bid_micros=200_000, max_bid_micros=5_000_000
    )
    currents = [None, 200_000, 350_000, 1_000_000, 4_000_000, 5_000_000]
    proposals = [1, 150_000, 300_000, 900_000, 1_250_000, 6_000_000, 90_000_000]
    for current in currents:
        for proposed in proposals:
            b = clamp_bid(settings, current, proposed).adjusted_bid_micros
            assert settings.min_bid_micros <= b <= settings.max_bid_micros
            if current:
                assert abs(b - current) / current <= settings.max_bid_change_percent / 100 + 1e-6


# ─────────────────────────────────────────────────────────────
# Settings, kill switch, protection, quota
# ─────────────────────────────────────────────────────────────
def test_defaults_apply_when_no_settings_row(con):
    guard = _guard(con)
    assert guard.settings == GovernanceSettings.defaults("p1")
    assert guard.is_automation_paused().paused is False


def test_kill_switch_reports_reason(con):
    upsert_governance_settings(con, {"profile_id": "p1", "automation_paused": True, "automation_paused_reason": "Holiday freeze"})
    state = _guard(con).is_automation_paused()
    assert state.paused is True
    assert state.reason == "Holiday freeze"


def test_kill_switch_default_reason(con):
    upsert_governance_settings(con, {"profile_id": "p1", "automation_paused": True})
    assert _guard(con).is_automation_paused().reason == "Automation paused by user"


def test_settings_read_once_per_cache(con):
    cache = GovernanceCache()
    upsert_governance_settings(con, {"profile_id": "p1", "max_actions_per_day": 7})
    assert _guard(con, cache=cache).settings.max_actions_per_day == 7

    # Later edits are not seen by the same invocation's cache
    upsert_governance_settings(con, {"profile_id": "p1", "max_actions_per_day": 3})
    assert _guard(con, cache=cache).settings.max_actions_per_day == 7
    assert "p1" in cache and len(cache) == 1

    # A new invocation gets a fresh cache
    assert _guard(con).settings.max_actions_per_day == 3


def test_entity_protection(con):
    add_protected_entity(con, "p1", "campaign", "c1", "Brand campaign")
    guard = _guard(con)
    assert guard.is_entity_protected(EntityType.CAMPAIGN, "c1").protected is True
    assert guard.is_entity_protected(EntityType.CAMPAIGN, "c1").reason == "Brand campaign"
    assert guard.is_entity_protected(EntityType.CAMPAIGN, "c2").protected is False
    assert guard.is_entity_protected(EntityType.AD_GROUP, "c1").protected is False
    # Other tenants are not affected
    assert _guard(con, "p2").is_entity_protected(EntityType.CAMPAIGN, "c1").protected is False


def test_action_quota(con):
    upsert_governance_settings(con, {"profile_id": "p1", "max_actions_per_day": 2})
    add_applied_action(con, "a1", "r1")
    assert _guard(con).check_action_quota().allowed is True

    add_applied_action(con, "a2", "r1")
    quota = _guard(con).check_action_quota()
    assert quota.allowed is False
    assert quota.used == 2 and quota.limit == 2
    assert "Daily action limit" in quota.reason


def test_quota_ignores_other_days(con):
    upsert_governance_settings(con, {"profile_id": "p1", "max_actions_per_day": 1})
    add_applied_action(con, "a1", "r1", day=date(2026, 10, 16))
    assert _guard(con).check_action_quota().allowed is True


def test_requires_approval_threshold(con):
    guard = _guard(con)
    assert guard.requires_approval(999_999) is False
    assert guard.requires_approval(1_000_000) is True
    assert guard.requires_approval(None) is False


# ─────────────────────────────────────────────────────────────
# Filter and adjust
# ─────────────────────────────────────────────────────────────
def test_filter_drops_protected_entities(con):
    add_protected_entity(con, "p1", "campaign", "c1")
    actions = [
        _action(ActionType.PAUSE_CAMPAIGN, EntityType.CAMPAIGN, "c1", campaign_id="c1"),
        _action(ActionType.PAUSE_CAMPAIGN, EntityType.CAMPAIGN, "c2", campaign_id="c2"),
    ]
    kept = _guard(con).filter_and_adjust(actions)
    assert [a.entity_id for a in kept] == ["c2"]


def test_filter_drops_actions_under_protected_campaign(con):
    add_protected_entity(con, "p1", "campaign", "c1")
    action = _action(
        ActionType.ADD_NEGATIVE, EntityType.AD_GROUP, "ag1", campaign_id="c1", ad_group_id="ag1"
    )
    assert _guard(con).filter_and_adjust([action]) == []


def test_filter_clamps_bid_and_records_reason(con):
    upsert_governance_settings(con, {"profile_id": "p1", "max_bid_micros": 2_000_000})
    action = _action(
        ActionType.CREATE_KEYWORD,
        EntityType.AD_GROUP,
        "ag1",
        campaign_id="c1",
        bid_micros=3_500_000,
        estimated_impact_micros=3_500_000,
    )
    [kept] = _guard(con).filter_and_adjust([action])
    assert kept.payload["bid_micros"] == 2_000_000
    assert kept.payload["proposed_bid_micros"] == 3_500_000
    assert "maximum" in kept.payload["guardrail_reason"]
    assert kept.payload["requires_approval"] is True
    # Input action is not mutated
    assert action.payload["bid_micros"] == 3_500_000


def test_filter_uses_current_bid_for_percent_clamp(con):
    action = _action(
        ActionType.ADJUST_BID,
        EntityType.KEYWORD,
        "k1",
        current_bid_micros=1_000_000,
        bid_micros=2_000_000,
    )
    [kept] = _guard(con).filter_and_adjust([action])
    assert kept.payload["bid_micros"] == 1_200_000
    assert kept.payload["guardrail_reason"].startswith("Bid change limited to 20%")


def test_filter_leaves_bidless_actions_unchanged(con):
    action = _action(ActionType.PAUSE_CAMPAIGN, EntityType.CAMPAIGN, "c9", campaign_id="c9", estimated_impact_micros=10)
    [kept] = _guard(con).filter_and_adjust([action])
    assert "guardrail_reason" not in kept.payload
    assert kept.payload["requires_approval"] is False
    assert kept.idempotency_key == action.idempotency_key
