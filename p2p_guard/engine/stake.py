"""LP collateral requirements and slashing arithmetic."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from ..config.models import PolicyConfig
from ..errors import ValidationError
from .policy import RiskLevel, risk_level_for_score, stake_multiplier


class SlashReason(str, Enum):
    ORDER_TIMEOUT = "order_timeout"
    FAKE_PAYMENT_PROOF = "fake_payment_proof"
    DISPUTE_LOST = "dispute_lost"
    PAYMENT_REVERSAL = "payment_reversal"
    LATE_RELEASE = "late_release"


@dataclass(frozen=True)
class StakeRequirement:
    amount: float
    order_amount: float
    risk_score: float
    risk_level: RiskLevel
    multiplier: float
    clamped: bool

    def to_payload(self) -> Dict[str, Any]:
        return {
            "requiredStake": self.amount,
            "riskLevel": self.risk_level.value,
            "multiplier": self.multiplier,
        }


@dataclass(frozen=True)
class Penalty:
    reason: SlashReason
    percentage: float
    stake: float
    amount: float


class StakeCalculator:
    def __init__(self, policy: PolicyConfig) -> None:
        self._policy = policy

    def required_stake(self, amount: float, risk_score: float) -> StakeRequirement:
        """Collateral the LP must post: ``amount * base% * multiplier[level]`` within [min, max]."""

        order_amount = _non_negative(amount, "amount")
        score = _finite(risk_score, "riskScore")
        stakes = self._policy.stakes
        level = risk_level_for_score(self._policy, score)
        multiplier = stake_multiplier(self._policy, level)
        raw = order_amount * stakes.base_percentage / 100.0 * multiplier
        bounded = max(stakes.min_stake, min(stakes.max_stake, raw))
        return StakeRequirement(
            amount=bounded,
            order_amount=order_amount,
            risk_score=score,
            risk_level=level,
            multiplier=multiplier,
            clamped=bounded != raw,
        )

    def slash_amount(self, stake: float, percentage: float) -> float:
        return _non_negative(stake, "stake") * _non_negative(percentage, "percentage") / 100.0

    def penalty(self, stake: float, reason: SlashReason | str) -> Penalty:
        """Apply the slashing table. Payment reversals may exceed the full stake."""

        try:
            reason = SlashReason(reason)
        except ValueError as exc:
            raise ValidationError(f"Unknown slash reason '{reason}'") from exc
        percentage = float(getattr(self._policy.slashing, reason.value))
        return Penalty(
            reason=reason,
            percentage=percentage,
            stake=float(stake),
            amount=self.slash_amount(stake, percentage),
        )


def _finite(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be numeric") from exc
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be finite")
    return number


def _non_negative(value: Any, name: str) -> float:
    number = _finite(value, name)
    if number < 0:
        raise ValidationError(f"{name} cannot be negative")
    return number
