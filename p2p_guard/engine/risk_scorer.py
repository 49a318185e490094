"""Pure risk scoring of candidate orders."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from ..config.models import PolicyConfig
from ..errors import ValidationError
from .activity_store import UserHistory
from .policy import RiskLevel, get_payment_method, risk_level_for_score

logger = logging.getLogger(__name__)

MAX_SCORE = 100.0


class RequiredAction(str, Enum):
    MANUAL_REVIEW = "manual_review"
    DELAYED_RELEASE = "delayed_release"
    ADDITIONAL_VERIFICATION = "additional_verification"


@dataclass(frozen=True)
class OrderAnalysisData:
    """Candidate order as submitted by the requester."""

    amount_usdc: float
    user_address: str
    payment_method: str = "upi"
    fiat_currency: str = "INR"
    ip_address: str = "unknown"
    device_id: Optional[str] = None


@dataclass(frozen=True)
class RiskSignal:
    name: str
    points: float
    detail: str


@dataclass
class RiskAssessment:
    risk_score: float
    risk_level: RiskLevel
    blocked: bool
    required_actions: List[RequiredAction] = field(default_factory=list)
    signals: List[RiskSignal] = field(default_factory=list)
    failed_closed: bool = False

    @classmethod
    def fail_closed(cls, reason: str) -> "RiskAssessment":
        """Assessment used when scoring itself failed; never admits the order."""

        return cls(
            risk_score=MAX_SCORE,
            risk_level=RiskLevel.CRITICAL,
            blocked=True,
            required_actions=[RequiredAction.MANUAL_REVIEW, RequiredAction.DELAYED_RELEASE],
            signals=[RiskSignal("scoring_failure", MAX_SCORE, reason)],
            failed_closed=True,
        )

    def signal(self, name: str) -> Optional[RiskSignal]:
        for item in self.signals:
            if item.name == name:
                return item
        return None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "riskScore": self.risk_score,
            "riskLevel": self.risk_level.value,
            "blocked": self.blocked,
            "requiredActions": [action.value for action in self.required_actions],
        }


class RiskScorer:
    """Additive scorer over velocity, wallet age, amount shape, timing,
    payment method and dispute history signals."""

    def __init__(self, policy: PolicyConfig) -> None:
        self._policy = policy
        self._zone = ZoneInfo(policy.reference_timezone)

    def analyze(self, order: OrderAnalysisData, history: UserHistory, now: datetime) -> RiskAssessment:
        amount = validate_amount(order.amount_usdc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        signals: List[RiskSignal] = []
        for check in (
            self._velocity,
            self._wallet_age,
            self._round_amount,
            self._amount_escalation,
            self._suspicious_hour,
            self._payment_method,
            self._dispute_history,
        ):
            result = check(order, amount, history, now)
            if result is not None and result.points > 0:
                signals.append(result)

        score = min(MAX_SCORE, max(0.0, float(sum(item.points for item in signals))))
        level = risk_level_for_score(self._policy, score)

        velocity = next((item for item in signals if item.name == "velocity"), None)
        velocity_blocked = (
            velocity is not None and velocity.points >= self._policy.scoring.velocity_block_points
        )
        blocked = level is RiskLevel.CRITICAL or velocity_blocked

        actions: List[RequiredAction] = []
        if level.at_least(RiskLevel.MEDIUM):
            actions.append(RequiredAction.MANUAL_REVIEW)
        if level.at_least(RiskLevel.HIGH):
            actions.append(RequiredAction.DELAYED_RELEASE)
        if any(item.name == "new_wallet" for item in signals):
            actions.append(RequiredAction.ADDITIONAL_VERIFICATION)

        assessment = RiskAssessment(
            risk_score=score,
            risk_level=level,
            blocked=blocked,
            required_actions=actions,
            signals=signals,
        )
        logger.log(
            logging.WARNING if blocked else logging.DEBUG,
            "Scored order",
            extra={
                "user": order.user_address,
                "risk_score": score,
                "risk_level": level.value,
                "blocked": blocked,
                "signals": [item.name for item in signals],
            },
        )
        return assessment

    def _velocity(self, order, amount, history: UserHistory, now) -> Optional[RiskSignal]:
        fraud = self._policy.fraud
        if history.orders_last_hour >= fraud.max_orders_per_hour:
            detail = f"{history.orders_last_hour} orders in the last hour (max {fraud.max_orders_per_hour})"
        elif history.orders_last_24h >= fraud.max_orders_per_day:
            detail = f"{history.orders_last_24h} orders in the last 24h (max {fraud.max_orders_per_day})"
        else:
            return None
        return RiskSignal("velocity", self._policy.scoring.velocity_points, detail)

    def _wallet_age(self, order, amount, history: UserHistory, now) -> Optional[RiskSignal]:
        age = history.wallet_age_hours(now)
        limit = self._policy.fraud.new_wallet_age_hours
        if age is None or limit <= 0 or age >= limit:
            return None
        weights = self._policy.scoring
        scaled = round(weights.new_wallet_max_points * (1.0 - age / limit))
        points = max(weights.new_wallet_min_points, float(scaled))
        return RiskSignal("new_wallet", points, f"wallet is {age:.1f}h old (< {limit:g}h)")

    def _round_amount(self, order, amount: float, history, now) -> Optional[RiskSignal]:
        multiple = self._policy.fraud.round_number_threshold
        if multiple <= 0 or not math.isclose(math.fmod(amount, multiple), 0.0, abs_tol=1e-9):
            return None
        return RiskSignal(
            "round_amount", self._policy.scoring.round_number_points, f"amount is a multiple of {multiple:g}"
        )

    def _amount_escalation(self, order, amount: float, history: UserHistory, now) -> Optional[RiskSignal]:
        average = history.average_order_amount
        ratio = self._policy.fraud.amount_escalation_threshold
        if average <= 0 or amount < ratio * average:
            return None
        return RiskSignal(
            "amount_escalation",
            self._policy.scoring.amount_escalation_points,
            f"amount {amount:g} is at least {ratio:g}x the average {average:.2f}",
        )

    def _suspicious_hour(self, order, amount, history, now: datetime) -> Optional[RiskSignal]:
        fraud = self._policy.fraud
        local_hour = now.astimezone(self._zone).hour
        if not fraud.suspicious_hours_start <= local_hour < fraud.suspicious_hours_end:
            return None
        return RiskSignal(
            "suspicious_hour",
            self._policy.scoring.suspicious_hour_points,
            f"requested at {local_hour:02d}:xx {self._policy.reference_timezone}",
        )

    def _payment_method(self, order: OrderAnalysisData, amount, history, now) -> Optional[RiskSignal]:
        method = get_payment_method(self._policy, order.payment_method)
        if method is None:
            raise ValidationError(f"Unsupported payment method '{order.payment_method}'")
        return RiskSignal(
            "payment_method", float(method.risk_score), f"{method.name} base risk {method.risk_score:g}"
        )

    def _dispute_history(self, order, amount, history: UserHistory, now) -> Optional[RiskSignal]:
        if history.dispute_count <= 0:
            return None
        weights = self._policy.scoring
        points = min(weights.dispute_points_cap, weights.dispute_points_per_case * history.dispute_count)
        return RiskSignal("dispute_history", points, f"{history.dispute_count} prior disputes")


def validate_amount(value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError("amountUsdc must be numeric")
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("amountUsdc must be numeric") from exc
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("amountUsdc must be greater than zero")
    return amount
