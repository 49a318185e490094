"""Engine facade wiring the scorer, stake policy, matcher and dispute flow."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..audit import AuditLogWriter, get_audit_logger
from ..config.models import AppConfig, PolicyConfig
from ..errors import ConflictError, GuardError, InternalError, NotFoundError, ValidationError
from .activity_store import (
    ActivityStore,
    Clock,
    FileActivityStore,
    InMemoryActivityStore,
    UserHistory,
    normalise_user,
    utc_now,
)
from .disputes import (
    ArbitrationVote,
    ArbitratorProfile,
    Dispute,
    DisputeEvidence,
    DisputeParty,
    DisputeRegistry,
    DisputeResolver,
    DisputeStatus,
    DisputeTier,
    Resolution,
    parse_decision,
    parse_slash_percentage,
)
from .lp_matcher import LiquidityProvider, LPMatcher, MatchResult, validate_order_type
from .metrics import MetricRegistry, Timer
from .policy import default_policy, get_payment_method
from .risk_scorer import OrderAnalysisData, RiskAssessment, RiskScorer, validate_amount
from .settlement import LoggingSettlementGateway, SettlementExecutor, SettlementGateway
from .stake import Penalty, SlashReason, StakeCalculator, StakeRequirement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderDecision:
    """Outcome of admitting a candidate order."""

    order: OrderAnalysisData
    order_type: str
    assessment: RiskAssessment
    history: UserHistory
    stake: Optional[StakeRequirement] = None
    match: Optional[MatchResult] = None

    @property
    def admitted(self) -> bool:
        return not self.assessment.blocked

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": True, "admitted": self.admitted, "type": self.order_type}
        payload.update(self.assessment.to_payload())
        payload["requiredStake"] = self.stake.amount if self.stake else None
        payload["match"] = None
        if self.match is not None:
            match_payload = self.match.to_payload()
            match_payload.pop("success", None)
            payload["match"] = match_payload
        return payload


class TradeGuardEngine:
    """Synchronous decision engine shared by every request handler.

    All clocks are injectable. Scoring, stake and matching are pure; the
    activity store and the dispute registry carry their own per-key locks so
    the engine itself holds no lock across a decision.
    """

    def __init__(
        self,
        policy: Optional[PolicyConfig] = None,
        *,
        activity_store: Optional[ActivityStore] = None,
        disputes: Optional[DisputeRegistry] = None,
        settlement: Optional[SettlementExecutor] = None,
        audit_logger: Optional[AuditLogWriter] = None,
        metrics: Optional[MetricRegistry] = None,
        clock: Optional[Clock] = None,
        liquidity_pool: Iterable[LiquidityProvider] = (),
        arbitrators: Iterable[ArbitratorProfile] = (),
    ) -> None:
        self.policy = policy or default_policy()
        self.clock = clock or utc_now
        self.metrics = metrics or MetricRegistry()
        self.activity = activity_store or InMemoryActivityStore(clock=self.clock)
        self.disputes = disputes or DisputeRegistry()
        self.settlement = settlement or SettlementExecutor(LoggingSettlementGateway(), metrics=self.metrics)
        self.audit_logger = audit_logger
        self.scorer = RiskScorer(self.policy)
        self.stakes = StakeCalculator(self.policy)
        self.matcher = LPMatcher(self.policy)
        self.resolver = DisputeResolver(self.policy)
        self._pool: Tuple[LiquidityProvider, ...] = tuple(liquidity_pool)
        self._pool_lock = threading.Lock()
        self._arbitrators: Dict[str, ArbitratorProfile] = {
            profile.address.lower(): profile for profile in arbitrators
        }

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        gateway: Optional[SettlementGateway] = None,
        clock: Optional[Clock] = None,
    ) -> "TradeGuardEngine":
        """Build an engine with the stores, audit writer and pool described by ``config``."""

        metrics = MetricRegistry()
        store: ActivityStore
        if config.state_path:
            store = FileActivityStore(config.state_path, clock=clock)
        else:
            store = InMemoryActivityStore(clock=clock)
        return cls(
            config.policy,
            activity_store=store,
            settlement=SettlementExecutor(gateway or LoggingSettlementGateway(), metrics=metrics),
            audit_logger=get_audit_logger(config.audit),
            metrics=metrics,
            clock=clock,
            liquidity_pool=config.liquidity_pool,
            arbitrators=config.arbitrators,
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def assess_order(self, order: OrderAnalysisData, *, now: Optional[datetime] = None) -> RiskAssessment:
        """Score ``order`` against the user's current history without recording it."""

        now = now or self.clock()
        history = self.activity.get(order.user_address)
        return self._score(order, history, now)

    def admit_order(
        self,
        order: OrderAnalysisData,
        order_type: str = "buy",
        *,
        now: Optional[datetime] = None,
    ) -> OrderDecision:
        """Admission: limits, history snapshot, record the submission, score, then stake and match.

        The submission is counted even when the order ends up blocked so
        repeated attempts keep feeding the velocity signal.
        """

        now = now or self.clock()
        amount = validate_amount(order.amount_usdc)
        order_type = validate_order_type(order_type)
        limits = self.policy.orders
        if amount < limits.min_amount or amount > limits.max_amount:
            raise ValidationError(
                f"Order amount must be between {limits.min_amount:g} and {limits.max_amount:g} USDC",
                details={"amountUsdc": amount},
            )
        if get_payment_method(self.policy, order.payment_method) is None:
            raise ValidationError(f"Unsupported payment method '{order.payment_method}'")

        history = self.activity.get(order.user_address)
        self.activity.record_order(order.user_address, amount)
        assessment = self._score(order, history, now)

        stake: Optional[StakeRequirement] = None
        match: Optional[MatchResult] = None
        if not assessment.blocked:
            stake = self.stakes.required_stake(amount, assessment.risk_score)
            match = self.matcher.match(amount, order_type, self.liquidity_pool())

        decision = OrderDecision(
            order=order,
            order_type=order_type,
            assessment=assessment,
            history=history,
            stake=stake,
            match=match,
        )
        self.metrics.inc("orders_total", labels={"outcome": "admitted" if decision.admitted else "blocked"})
        logger.log(
            logging.INFO if decision.admitted else logging.WARNING,
            "Order admission decided",
            extra={
                "user": order.user_address,
                "amount": amount,
                "type": order_type,
                "admitted": decision.admitted,
                "risk_score": assessment.risk_score,
                "required_stake": stake.amount if stake else None,
                "lp": match.matched.address if match and match.matched else None,
            },
        )
        return decision

    def _score(self, order: OrderAnalysisData, history: UserHistory, now: datetime) -> RiskAssessment:
        # Caller errors propagate; anything else blocks the order.
        start = time.perf_counter()
        try:
            assessment = self.scorer.analyze(order, history, now)
        except GuardError:
            raise
        except Exception as exc:
            self.metrics.inc("risk_scoring_failures_total")
            logger.exception(
                "Risk scoring failed; blocking order",
                extra={"user": order.user_address, "error": str(exc)},
            )
            return RiskAssessment.fail_closed(str(exc))
        finally:
            self.metrics.observe("risk_scoring_latency_seconds", time.perf_counter() - start)
        self.metrics.inc("risk_assessments_total", labels={"level": assessment.risk_level.value})
        return assessment

    def record_order(
        self, user: str, amount: float, *, completed: bool = False, disputed: bool = False
    ) -> UserHistory:
        return self.activity.record_order(user, amount, completed=completed, disputed=disputed)

    def complete_order(self, user: str, amount: float) -> UserHistory:
        return self.activity.complete_order(user, amount)

    def reset_hourly(self) -> int:
        count = self.activity.reset_hourly()
        self.metrics.inc("activity_resets_total", labels={"epoch": "hourly"})
        return count

    def reset_daily(self) -> int:
        count = self.activity.reset_daily()
        self.metrics.inc("activity_resets_total", labels={"epoch": "daily"})
        return count

    def risk_profile(self, address: str) -> UserHistory:
        if not self.activity.contains(address):
            raise NotFoundError(f"No activity recorded for {address}")
        return self.activity.get(address)

    # ------------------------------------------------------------------
    # Liquidity
    # ------------------------------------------------------------------
    def liquidity_pool(self) -> List[LiquidityProvider]:
        with self._pool_lock:
            return list(self._pool)

    def replace_liquidity_pool(self, providers: Iterable[LiquidityProvider]) -> None:
        snapshot = tuple(providers)
        with self._pool_lock:
            self._pool = snapshot
        logger.info("Liquidity pool updated", extra={"providers": len(snapshot)})

    def match_liquidity(self, amount: float, order_type: str) -> MatchResult:
        with Timer(self.metrics, "lp_match_latency_seconds"):
            result = self.matcher.match(amount, order_type, self.liquidity_pool())
        self.metrics.inc("lp_matches_total", labels={"pooled": str(result.pooled).lower()})
        return result

    def required_stake(self, amount: float, risk_score: float) -> StakeRequirement:
        return self.stakes.required_stake(amount, risk_score)

    def apply_penalty(self, lp_address: str, stake: float, reason: SlashReason | str, *, actor: str = "system") -> Penalty:
        """Slash ``lp_address`` according to the slashing table and send the command."""

        if not lp_address:
            raise ValidationError("lpAddress is required")
        penalty = self.stakes.penalty(stake, reason)
        self.settlement.apply_penalty(lp_address, penalty)
        self.metrics.inc("penalties_total", labels={"reason": penalty.reason.value})
        self._audit(
            "lp_penalty",
            actor,
            {
                "lp": lp_address,
                "reason": penalty.reason.value,
                "percentage": penalty.percentage,
                "stake": penalty.stake,
                "amount": penalty.amount,
            },
        )
        return penalty

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------
    def open_dispute(
        self,
        order_id: str,
        user_address: str,
        lp_address: str,
        amount: float,
        *,
        raised_by: str = "user",
        reason: str = "",
        lp_stake: Optional[float] = None,
        locked_rate: Optional[float] = None,
        fiat_amount: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Dispute:
        now = now or self.clock()
        normalise_user(user_address)
        normalise_user(lp_address)
        amount = validate_amount(amount)
        if lp_stake is None:
            lp_stake = self._pool_stake(lp_address)

        dispute = self.disputes.open(
            order_id=order_id,
            user=_party(user_address, self._known_history(user_address)),
            lp=_party(lp_address, self._known_history(lp_address), stake=lp_stake),
            amount=amount,
            raised_by=raised_by,
            raised_at=now,
            reason=reason,
            locked_rate=locked_rate,
            fiat_amount=fiat_amount,
        )
        self.activity.record_dispute(user_address)
        self.metrics.inc("disputes_opened_total", labels={"raised_by": raised_by})
        self._audit(
            "dispute_opened",
            user_address if raised_by == "user" else lp_address,
            {"dispute": dispute.id, "order": order_id, "amount": amount, "reason": reason},
        )
        return dispute

    def dispute_detail(self, dispute_id: str, *, now: Optional[datetime] = None) -> Tuple[Dispute, DisputeTier]:
        dispute = self.disputes.get(dispute_id)
        return dispute, self.resolver.escalation_tier(dispute.raised_at, now or self.clock())

    def list_disputes(self, *, status: Optional[str] = None, address: Optional[str] = None) -> List[Dispute]:
        parsed: Optional[DisputeStatus] = None
        if status:
            try:
                parsed = DisputeStatus(status)
            except ValueError as exc:
                raise ValidationError("status must be 'opened' or 'resolved'") from exc
        return self.disputes.list(status=parsed, address=address)

    def submit_evidence(
        self,
        dispute_id: str,
        submitted_by: str,
        *,
        utr_reference: Optional[str] = None,
        explanation: str = "",
        screenshots: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> Dispute:
        normalise_user(submitted_by)
        if utr_reference is not None:
            utr_reference = str(utr_reference).strip()
            expected = self.policy.verification.utr_length
            if len(utr_reference) != expected or not utr_reference.isdigit():
                raise ValidationError(f"utrReference must be {expected} digits")
        if not self.disputes.get(dispute_id).involves(submitted_by):
            raise ValidationError("Only dispute participants can submit evidence")
        evidence = DisputeEvidence(
            submitted_by=submitted_by,
            submitted_at=now or self.clock(),
            utr_reference=utr_reference,
            explanation=str(explanation or ""),
            screenshots=tuple(str(item) for item in screenshots),
        )
        dispute = self.disputes.submit_evidence(dispute_id, evidence)
        self._audit(
            "dispute_evidence",
            submitted_by,
            {"dispute": dispute_id, "utr_reference": utr_reference, "screenshots": len(evidence.screenshots)},
        )
        return dispute

    def cast_vote(
        self,
        dispute_id: str,
        arbitrator: str,
        favor_user: bool,
        *,
        reasoning: str = "",
        now: Optional[datetime] = None,
    ) -> Tuple[Dispute, Optional[Resolution]]:
        """Record a community vote; the vote that completes the quorum resolves the dispute."""

        now = now or self.clock()
        profile = self._arbitrators.get(normalise_user(arbitrator))
        if profile is None:
            raise NotFoundError(f"Unknown arbitrator {arbitrator}")
        problems = self.resolver.eligibility_problems(profile)
        if problems:
            raise ValidationError("Arbitrator is not eligible", details={"problems": problems})

        current = self.disputes.get(dispute_id)
        if current.involves(arbitrator):
            raise ValidationError("Dispute participants cannot arbitrate their own dispute")
        tier = self.resolver.escalation_tier(current.raised_at, now)
        if tier is DisputeTier.AUTO:
            raise ConflictError(f"Community arbitration for {dispute_id} opens after the auto-resolution window")
        if tier is DisputeTier.ADMIN:
            raise ConflictError(f"Community arbitration window for {dispute_id} has closed")

        dispute = self.disputes.add_vote(
            dispute_id,
            ArbitrationVote(arbitrator=profile.address, favor_user=bool(favor_user), reasoning=reasoning, voted_at=now),
        )
        self.metrics.inc("arbitration_votes_total")
        self._audit("dispute_vote", profile.address, {"dispute": dispute_id, "favor_user": bool(favor_user)})

        outcome = self.resolver.tally(dispute)
        if outcome is None:
            return dispute, None
        decision, slash, rewards = outcome
        try:
            resolution = self.resolve_dispute(
                dispute_id,
                decision.value,
                slash,
                notes=f"Community vote {dispute.votes_for_user}-{dispute.votes_for_lp}",
                resolved_by="community",
                now=now,
                arbitrator_rewards=rewards,
            )
        except ConflictError:
            # A concurrent vote completed the quorum first.
            logger.info("Dispute already resolved by a concurrent vote", extra={"dispute": dispute_id})
            return self.disputes.get(dispute_id), None
        return self.disputes.get(dispute_id), resolution

    def resolve_dispute(
        self,
        dispute_id: str,
        decision: Any,
        slash_percentage: Any = None,
        *,
        notes: str = "",
        resolved_by: str = "arbitrator",
        now: Optional[datetime] = None,
        arbitrator_rewards: Optional[Mapping[str, float]] = None,
    ) -> Resolution:
        """Validate, commit exactly once under the dispute lock, settle, then audit.

        Settlement failures surface as :class:`InternalError` after the
        commit; the resolution stands and is never replayed automatically.
        """

        parsed_decision = parse_decision(decision)
        requested = parse_slash_percentage(slash_percentage)
        now = now or self.clock()

        dispute, resolution = self.disputes.commit_resolution(
            dispute_id,
            lambda current: self.resolver.resolve(
                current,
                parsed_decision,
                requested,
                notes=notes,
                resolved_by=resolved_by,
                now=now,
                arbitrator_rewards=arbitrator_rewards,
            ),
        )
        self.metrics.inc("disputes_resolved_total", labels={"decision": resolution.decision.value})
        audit_details = {"dispute": dispute_id, **resolution.to_payload()}
        try:
            self.settlement.execute(dispute, resolution)
        except InternalError:
            self._audit("dispute_settlement_failed", resolved_by, audit_details)
            raise
        self._audit("dispute_resolved", resolved_by, audit_details)
        logger.info(
            "Dispute resolved",
            extra={
                "dispute": dispute_id,
                "decision": resolution.decision.value,
                "slash_percentage": resolution.slash_percentage,
                "requested_slash_percentage": resolution.requested_slash_percentage,
                "resolved_by": resolved_by,
            },
        )
        return resolution

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _known_history(self, address: str) -> UserHistory:
        # get() creates a record for an unseen address.
        if not self.activity.contains(address):
            return UserHistory()
        return self.activity.get(address)

    def _pool_stake(self, address: str) -> Optional[float]:
        wanted = address.lower()
        for provider in self.liquidity_pool():
            if provider.address.lower() == wanted:
                return provider.stake
        return None

    def _audit(self, action: str, actor: str, details: Mapping[str, Any]) -> None:
        if self.audit_logger is None:
            return
        try:
            self.audit_logger.log(action=action, actor=str(actor), details=dict(details))
        except Exception as exc:  # pragma: no cover - audit sink failure
            logger.warning("Failed to write audit entry '%s': %s", action, exc)


def _party(address: str, history: UserHistory, *, stake: Optional[float] = None) -> DisputeParty:
    return DisputeParty(
        address=address,
        total_orders=history.completed_orders,
        disputes_raised=history.dispute_count,
        stake=stake,
    )
