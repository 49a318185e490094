from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from p2p_guard.config.models import DisputePolicy, PolicyConfig
from p2p_guard.engine.disputes import (
    ArbitrationVote,
    ArbitratorProfile,
    Decision,
    DisputeParty,
    DisputeRegistry,
    DisputeResolver,
    DisputeStatus,
    DisputeTier,
)
from p2p_guard.errors import ConflictError, NotFoundError, ValidationError

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def registry() -> DisputeRegistry:
    return DisputeRegistry()


@pytest.fixture
def resolver() -> DisputeResolver:
    return DisputeResolver(PolicyConfig())


def _open(registry: DisputeRegistry, order_id: str = "order-1", amount: float = 1000):
    return registry.open(
        order_id=order_id,
        user=DisputeParty(address="0xUser"),
        lp=DisputeParty(address="0xLp", stake=400),
        amount=amount,
        raised_by="user",
        raised_at=NOW,
        reason="payment not received",
    )


def _vote(arbitrator: str, favor_user: bool) -> ArbitrationVote:
    return ArbitrationVote(arbitrator=arbitrator, favor_user=favor_user, reasoning="", voted_at=NOW)


def test_user_wins_with_full_slash_bans_lp(registry, resolver):
    dispute = _open(registry)

    resolution = resolver.resolve(dispute, "user_wins", 100, notes="fake proof", now=NOW)

    assert resolution.decision is Decision.USER_WINS
    assert resolution.slash_percentage == 100
    assert resolution.actions.to_payload() == {
        "fundsReleased": True,
        "fundsRefunded": False,
        "lpSlashed": True,
        "lpBanned": True,
        "userBanned": False,
    }


def test_lp_wins_ignores_requested_slash(registry, resolver):
    dispute = _open(registry)

    resolution = resolver.resolve(dispute, "lp_wins", 50, now=NOW)

    assert resolution.slash_percentage == 0
    assert resolution.requested_slash_percentage == 50
    assert resolution.actions.to_payload() == {
        "fundsReleased": False,
        "fundsRefunded": True,
        "lpSlashed": False,
        "lpBanned": False,
        "userBanned": True,
    }


def test_action_set_is_determined_by_decision_and_slash(registry, resolver):
    dispute = _open(registry)
    for decision in Decision:
        for slash in (None, 0, 20, 50, 100):
            actions = resolver.resolve(dispute, decision, slash, now=NOW).actions
            user_wins = decision is Decision.USER_WINS
            assert actions.funds_released is user_wins
            assert actions.funds_refunded is not user_wins
            assert actions.lp_slashed is (user_wins and bool(slash))
            assert actions.user_banned is not user_wins
            assert actions.lp_banned is (user_wins and slash == 100)


@pytest.mark.parametrize("decision, slash", [("draw", 0), (None, 0), ("user_wins", 30), ("user_wins", "50"), ("user_wins", True)])
def test_invalid_resolution_input_is_rejected(registry, resolver, decision, slash):
    dispute = _open(registry)

    with pytest.raises(ValidationError):
        resolver.resolve(dispute, decision, slash, now=NOW)


def test_resolution_commits_once(registry, resolver):
    dispute = _open(registry)

    _, first = registry.commit_resolution(
        dispute.id, lambda current: resolver.resolve(current, "user_wins", 20, now=NOW)
    )
    with pytest.raises(ConflictError):
        registry.commit_resolution(dispute.id, lambda current: resolver.resolve(current, "lp_wins", 0, now=NOW))

    stored = registry.get(dispute.id)
    assert stored.status is DisputeStatus.RESOLVED
    assert stored.resolution == first
    assert stored.resolution.decision is Decision.USER_WINS


def test_failed_build_leaves_dispute_open(registry, resolver):
    dispute = _open(registry)

    with pytest.raises(ValidationError):
        registry.commit_resolution(dispute.id, lambda current: resolver.resolve(current, "maybe", now=NOW))

    assert registry.get(dispute.id).status is DisputeStatus.OPENED


def test_resolved_dispute_rejects_new_evidence_and_votes(registry, resolver):
    dispute = _open(registry)
    registry.commit_resolution(dispute.id, lambda current: resolver.resolve(current, "lp_wins", now=NOW))

    with pytest.raises(ConflictError):
        registry.add_vote(dispute.id, _vote("0xarb", True))


def test_escalation_tiers(resolver):
    assert resolver.escalation_tier(NOW, NOW + timedelta(minutes=1)) is DisputeTier.AUTO
    assert resolver.escalation_tier(NOW, NOW + timedelta(minutes=5)) is DisputeTier.COMMUNITY
    assert resolver.escalation_tier(NOW, NOW + timedelta(hours=4)) is DisputeTier.COMMUNITY
    assert resolver.escalation_tier(NOW, NOW + timedelta(hours=5)) is DisputeTier.ADMIN
    assert resolver.admin_deadline(NOW) == NOW + timedelta(minutes=5, hours=28)


def test_arbitrator_eligibility(resolver):
    good = ArbitratorProfile(address="0xarb", stake=500, completed_trades=50, dispute_rate=0.02)
    poor = ArbitratorProfile(address="0xnew", stake=100, completed_trades=3, dispute_rate=0.1)

    assert resolver.eligibility_problems(good) == []
    assert len(resolver.eligibility_problems(poor)) == 3


def test_tally_waits_for_quorum_then_rewards_majority(registry, resolver):
    dispute = _open(registry, amount=1000)
    registry.add_vote(dispute.id, _vote("0xa", True))
    dispute = registry.add_vote(dispute.id, _vote("0xb", False))

    assert resolver.tally(dispute) is None

    dispute = registry.add_vote(dispute.id, _vote("0xc", True))
    decision, slash, rewards = resolver.tally(dispute)

    assert decision is Decision.USER_WINS
    assert slash == 50
    assert rewards == {"0xa": 5.0, "0xc": 5.0}


def test_tied_vote_goes_to_lp(registry):
    resolver = DisputeResolver(replace(PolicyConfig(), disputes=DisputePolicy(votes_required=2)))
    dispute = _open(registry)
    registry.add_vote(dispute.id, _vote("0xa", True))
    dispute = registry.add_vote(dispute.id, _vote("0xb", False))

    decision, slash, rewards = resolver.tally(dispute)

    assert decision is Decision.LP_WINS
    assert slash == 0
    assert rewards == {"0xb": 5.0}


def test_duplicate_vote_is_rejected(registry):
    dispute = _open(registry)
    registry.add_vote(dispute.id, _vote("0xa", True))

    with pytest.raises(ConflictError):
        registry.add_vote(dispute.id, _vote("0xa", False))


def test_one_open_dispute_per_order(registry, resolver):
    first = _open(registry)
    with pytest.raises(ConflictError):
        _open(registry)

    registry.commit_resolution(first.id, lambda current: resolver.resolve(current, "lp_wins", now=NOW))
    second = _open(registry)

    assert second.id != first.id


def test_open_validates_input(registry):
    with pytest.raises(ValidationError):
        _open(registry, order_id="")
    with pytest.raises(ValidationError):
        _open(registry, amount=0)


def test_unknown_dispute(registry):
    with pytest.raises(NotFoundError):
        registry.get("dispute-404")


def test_registry_returns_copies(registry):
    dispute = _open(registry)
    dispute.evidence.append("tampered")

    assert registry.get(dispute.id).evidence == []


def test_list_filters_by_status_and_participant(registry, resolver):
    first = _open(registry, order_id="order-1")
    _open(registry, order_id="order-2")
    registry.commit_resolution(first.id, lambda current: resolver.resolve(current, "user_wins", now=NOW))

    assert [item.order_id for item in registry.list(status=DisputeStatus.OPENED)] == ["order-2"]
    assert len(registry.list(address="0xlp")) == 2
    assert registry.list(address="0xsomeone") == []


def test_dispute_payload_uses_milliseconds(registry):
    payload = _open(registry).to_payload(tier=DisputeTier.AUTO)

    assert payload["raisedAt"] == int(NOW.timestamp() * 1000)
    assert payload["tier"] == "auto"
    assert payload["lp"]["stake"] == 400
    assert payload["resolution"] is None
