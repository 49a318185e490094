"""Dispute state machine, community arbitration and the dispute registry.

A dispute is ``opened`` when raised and becomes ``resolved`` exactly once. The
escalation tier (auto, community, admin) is derived from the timelines and
tells callers which authority is expected to decide; the decision itself is
supplied from outside and turned into a :class:`Resolution` by
:class:`DisputeResolver`.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..config.models import PolicyConfig
from ..errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_SLASH_PERCENTAGES: Tuple[int, ...] = (0, 20, 50, 100)


class Decision(str, Enum):
    USER_WINS = "user_wins"
    LP_WINS = "lp_wins"


class DisputeStatus(str, Enum):
    OPENED = "opened"
    RESOLVED = "resolved"


class DisputeTier(str, Enum):
    AUTO = "auto"
    COMMUNITY = "community"
    ADMIN = "admin"


def _ms(moment: Optional[datetime]) -> Optional[int]:
    if moment is None:
        return None
    return int(moment.timestamp() * 1000)


@dataclass(frozen=True)
class DisputeEvidence:
    submitted_by: str
    submitted_at: datetime
    utr_reference: Optional[str] = None
    explanation: str = ""
    screenshots: Tuple[str, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "submittedBy": self.submitted_by,
            "submittedAt": _ms(self.submitted_at),
            "utrReference": self.utr_reference,
            "explanation": self.explanation,
            "screenshots": list(self.screenshots),
        }


@dataclass(frozen=True)
class DisputeParty:
    address: str
    total_orders: int = 0
    disputes_raised: int = 0
    disputes_lost: int = 0
    stake: Optional[float] = None
    name: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "address": self.address,
            "totalOrders": self.total_orders,
            "disputesRaised": self.disputes_raised,
            "disputesLost": self.disputes_lost,
        }
        if self.stake is not None:
            payload["stake"] = self.stake
        if self.name is not None:
            payload["name"] = self.name
        return payload


@dataclass(frozen=True)
class ArbitratorProfile:
    address: str
    stake: float
    completed_trades: int
    dispute_rate: float


@dataclass(frozen=True)
class ArbitrationVote:
    arbitrator: str
    favor_user: bool
    reasoning: str
    voted_at: datetime


@dataclass(frozen=True)
class ResolutionActions:
    funds_released: bool
    funds_refunded: bool
    lp_slashed: bool
    lp_banned: bool
    user_banned: bool

    @classmethod
    def derive(cls, decision: Decision, slash_percentage: int) -> "ResolutionActions":
        user_wins = decision is Decision.USER_WINS
        return cls(
            funds_released=user_wins,
            funds_refunded=not user_wins,
            lp_slashed=user_wins and slash_percentage > 0,
            lp_banned=slash_percentage == 100,
            user_banned=decision is Decision.LP_WINS,
        )

    def to_payload(self) -> Dict[str, bool]:
        return {
            "fundsReleased": self.funds_released,
            "fundsRefunded": self.funds_refunded,
            "lpSlashed": self.lp_slashed,
            "lpBanned": self.lp_banned,
            "userBanned": self.user_banned,
        }


@dataclass(frozen=True)
class Resolution:
    dispute_id: str
    decision: Decision
    slash_percentage: int
    requested_slash_percentage: int
    notes: str
    resolved_at: datetime
    resolved_by: str
    actions: ResolutionActions
    arbitrator_rewards: Mapping[str, float] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "disputeId": self.dispute_id,
            "decision": self.decision.value,
            "slashPercentage": self.slash_percentage,
            "requestedSlashPercentage": self.requested_slash_percentage,
            "notes": self.notes,
            "resolvedAt": _ms(self.resolved_at),
            "resolvedBy": self.resolved_by,
            "actions": self.actions.to_payload(),
        }
        if self.arbitrator_rewards:
            payload["arbitratorRewards"] = dict(self.arbitrator_rewards)
        return payload


@dataclass
class Dispute:
    id: str
    order_id: str
    user: DisputeParty
    lp: DisputeParty
    amount: float
    raised_by: str
    raised_at: datetime
    reason: str = ""
    status: DisputeStatus = DisputeStatus.OPENED
    locked_rate: Optional[float] = None
    fiat_amount: Optional[float] = None
    evidence: List[DisputeEvidence] = field(default_factory=list)
    votes: Dict[str, ArbitrationVote] = field(default_factory=dict)
    resolution: Optional[Resolution] = None

    @property
    def votes_for_user(self) -> int:
        return sum(1 for vote in self.votes.values() if vote.favor_user)

    @property
    def votes_for_lp(self) -> int:
        return sum(1 for vote in self.votes.values() if not vote.favor_user)

    def involves(self, address: str) -> bool:
        wanted = address.lower()
        return wanted in (self.user.address.lower(), self.lp.address.lower())

    def to_payload(self, *, tier: Optional[DisputeTier] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "orderId": self.order_id,
            "status": self.status.value,
            "raisedBy": self.raised_by,
            "raisedAt": _ms(self.raised_at),
            "reason": self.reason,
            "amount": self.amount,
            "lockedRate": self.locked_rate,
            "fiatAmount": self.fiat_amount,
            "user": self.user.to_payload(),
            "lp": self.lp.to_payload(),
            "evidence": [item.to_payload() for item in self.evidence],
            "votesForUser": self.votes_for_user,
            "votesForLp": self.votes_for_lp,
            "resolution": self.resolution.to_payload() if self.resolution else None,
        }
        if tier is not None:
            payload["tier"] = tier.value
        return payload


def parse_decision(value: Any) -> Decision:
    try:
        return Decision(value)
    except ValueError as exc:
        raise ValidationError('Invalid decision. Must be "user_wins" or "lp_wins"') from exc


def parse_slash_percentage(value: Any) -> int:
    """Return the validated slash percentage; ``None`` means no slash."""

    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Invalid slash percentage. Must be 0, 20, 50, or 100")
    if value not in ALLOWED_SLASH_PERCENTAGES:
        raise ValidationError("Invalid slash percentage. Must be 0, 20, 50, or 100")
    return int(value)


class DisputeResolver:
    """Pure transition from an opened dispute to its resolution."""

    def __init__(self, policy: PolicyConfig) -> None:
        self._policy = policy

    def resolve(
        self,
        dispute: Dispute,
        decision: Decision | str,
        slash_percentage: Optional[int] = None,
        *,
        notes: str = "",
        resolved_by: str = "arbitrator",
        now: datetime,
        arbitrator_rewards: Optional[Mapping[str, float]] = None,
    ) -> Resolution:
        parsed_decision = parse_decision(decision)
        requested = parse_slash_percentage(slash_percentage)
        if dispute.status is DisputeStatus.RESOLVED:
            raise ConflictError(f"Dispute {dispute.id} is already resolved")
        # Slashing only targets the LP, and only when the user prevails.
        effective = requested if parsed_decision is Decision.USER_WINS else 0
        return Resolution(
            dispute_id=dispute.id,
            decision=parsed_decision,
            slash_percentage=effective,
            requested_slash_percentage=requested,
            notes=str(notes or ""),
            resolved_at=now,
            resolved_by=resolved_by,
            actions=ResolutionActions.derive(parsed_decision, effective),
            arbitrator_rewards=dict(arbitrator_rewards or {}),
        )

    def escalation_tier(self, raised_at: datetime, now: datetime) -> DisputeTier:
        timelines = self._policy.disputes
        auto_until = raised_at + timedelta(minutes=timelines.auto_resolution_minutes)
        if now < auto_until:
            return DisputeTier.AUTO
        if now < auto_until + timedelta(hours=timelines.community_arbitration_hours):
            return DisputeTier.COMMUNITY
        return DisputeTier.ADMIN

    def admin_deadline(self, raised_at: datetime) -> datetime:
        timelines = self._policy.disputes
        return (
            raised_at
            + timedelta(minutes=timelines.auto_resolution_minutes)
            + timedelta(hours=timelines.community_arbitration_hours)
            + timedelta(hours=timelines.admin_review_hours)
        )

    def eligibility_problems(self, profile: ArbitratorProfile) -> List[str]:
        rules = self._policy.disputes
        problems: List[str] = []
        if profile.stake < rules.min_arbitrator_stake:
            problems.append(f"stake {profile.stake:g} below {rules.min_arbitrator_stake:g}")
        if profile.completed_trades < rules.min_arbitrator_trades:
            problems.append(f"{profile.completed_trades} trades below {rules.min_arbitrator_trades}")
        if profile.dispute_rate > rules.max_arbitrator_dispute_rate:
            problems.append(f"dispute rate {profile.dispute_rate:.2%} above {rules.max_arbitrator_dispute_rate:.2%}")
        return problems

    def arbitrator_reward(self, order_amount: float) -> float:
        return order_amount * self._policy.disputes.arbitrator_reward_bps / 10_000

    def tally(self, dispute: Dispute) -> Optional[Tuple[Decision, int, Dict[str, float]]]:
        """Return the community outcome once enough votes are in, else ``None``.

        Ties go to the LP. A user win slashes the LP by the dispute-lost
        percentage; every majority voter earns the arbitrator reward.
        """

        if len(dispute.votes) < self._policy.disputes.votes_required:
            return None
        user_wins = dispute.votes_for_user > dispute.votes_for_lp
        decision = Decision.USER_WINS if user_wins else Decision.LP_WINS
        slash = parse_slash_percentage(self._policy.slashing.dispute_lost) if user_wins else 0
        reward = self.arbitrator_reward(dispute.amount)
        rewards = {
            address: reward for address, vote in dispute.votes.items() if vote.favor_user == user_wins
        }
        return decision, slash, rewards


class DisputeRegistry:
    """In-memory dispute records with one lock per dispute."""

    def __init__(self) -> None:
        self._disputes: Dict[str, Dispute] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._sequence = itertools.count(1)

    def open(
        self,
        *,
        order_id: str,
        user: DisputeParty,
        lp: DisputeParty,
        amount: float,
        raised_by: str,
        raised_at: datetime,
        reason: str = "",
        locked_rate: Optional[float] = None,
        fiat_amount: Optional[float] = None,
        dispute_id: Optional[str] = None,
    ) -> Dispute:
        if not order_id:
            raise ValidationError("orderId is required")
        if raised_by not in ("user", "lp"):
            raise ValidationError("raisedBy must be 'user' or 'lp'")
        if amount <= 0:
            raise ValidationError("amount must be greater than zero")
        with self._registry_lock:
            for existing in self._disputes.values():
                if existing.order_id == order_id and existing.status is DisputeStatus.OPENED:
                    raise ConflictError(f"Order {order_id} already has open dispute {existing.id}")
            identifier = dispute_id or f"dispute-{next(self._sequence)}"
            if identifier in self._disputes:
                raise ConflictError(f"Dispute {identifier} already exists")
            dispute = Dispute(
                id=identifier,
                order_id=order_id,
                user=user,
                lp=lp,
                amount=float(amount),
                raised_by=raised_by,
                raised_at=raised_at,
                reason=reason,
                locked_rate=locked_rate,
                fiat_amount=fiat_amount,
            )
            self._disputes[identifier] = dispute
            self._locks[identifier] = threading.Lock()
        logger.info("Opened dispute", extra={"dispute": identifier, "order": order_id, "raised_by": raised_by})
        return copy.deepcopy(dispute)

    def get(self, dispute_id: str) -> Dispute:
        lock, dispute = self._entry(dispute_id)
        with lock:
            return copy.deepcopy(dispute)

    def list(self, *, status: Optional[DisputeStatus] = None, address: Optional[str] = None) -> List[Dispute]:
        with self._registry_lock:
            identifiers = list(self._disputes)
        results: List[Dispute] = []
        for identifier in identifiers:
            dispute = self.get(identifier)
            if status is not None and dispute.status is not status:
                continue
            if address and not dispute.involves(address):
                continue
            results.append(dispute)
        return results

    def submit_evidence(self, dispute_id: str, evidence: DisputeEvidence) -> Dispute:
        def apply(dispute: Dispute) -> None:
            dispute.evidence.append(evidence)

        return self._mutate_open(dispute_id, apply)

    def add_vote(self, dispute_id: str, vote: ArbitrationVote) -> Dispute:
        def apply(dispute: Dispute) -> None:
            if vote.arbitrator in dispute.votes:
                raise ConflictError(f"{vote.arbitrator} already voted on {dispute_id}")
            dispute.votes[vote.arbitrator] = vote

        return self._mutate_open(dispute_id, apply)

    def commit_resolution(
        self, dispute_id: str, build: Callable[[Dispute], Resolution]
    ) -> Tuple[Dispute, Resolution]:
        """Resolve ``dispute_id`` exactly once.

        ``build`` runs under the dispute's lock against a detached copy; a
        second attempt raises :class:`ConflictError` and leaves the first
        resolution untouched.
        """

        lock, dispute = self._entry(dispute_id)
        with lock:
            if dispute.status is DisputeStatus.RESOLVED:
                raise ConflictError(f"Dispute {dispute_id} is already resolved")
            resolution = build(copy.deepcopy(dispute))
            dispute.status = DisputeStatus.RESOLVED
            dispute.resolution = resolution
            return copy.deepcopy(dispute), resolution

    def _entry(self, dispute_id: str) -> Tuple[threading.Lock, Dispute]:
        with self._registry_lock:
            dispute = self._disputes.get(dispute_id)
            if dispute is None:
                raise NotFoundError(f"Dispute {dispute_id} not found")
            return self._locks[dispute_id], dispute

    def _mutate_open(self, dispute_id: str, apply: Callable[[Dispute], None]) -> Dispute:
        lock, dispute = self._entry(dispute_id)
        with lock:
            if dispute.status is DisputeStatus.RESOLVED:
                raise ConflictError(f"Dispute {dispute_id} is already resolved")
            apply(dispute)
            return copy.deepcopy(dispute)

