"""Lookup helpers over :class:`PolicyConfig`."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import Optional

from ..config.models import PaymentMethod, PolicyConfig


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank


_LEVEL_ORDER = (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL)


@lru_cache(maxsize=1)
def default_policy() -> PolicyConfig:
    """Return the process-wide default policy, built once."""

    return PolicyConfig()


def risk_level_for_score(policy: PolicyConfig, score: float) -> RiskLevel:
    thresholds = policy.risk_levels
    if score < thresholds.low:
        return RiskLevel.LOW
    if score < thresholds.medium:
        return RiskLevel.MEDIUM
    if score < thresholds.high:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def stake_multiplier(policy: PolicyConfig, level: RiskLevel | str) -> float:
    """Return the collateral multiplier for ``level``.

    Levels missing from the configured table fall back to the critical
    multiplier, the most conservative choice.
    """

    key = RiskLevel(level).value
    multipliers = policy.stakes.risk_multipliers
    if key in multipliers:
        return float(multipliers[key])
    return float(multipliers.get(RiskLevel.CRITICAL.value, 1.0))


def required_stake(policy: PolicyConfig, amount: float, risk_score: float) -> float:
    """Shortcut for :meth:`StakeCalculator.required_stake` returning the bare amount."""

    from .stake import StakeCalculator

    return StakeCalculator(policy).required_stake(amount, risk_score).amount


def get_payment_method(policy: PolicyConfig, method_id: Optional[str]) -> Optional[PaymentMethod]:
    """Return the payment method with ``method_id`` or ``None`` when unknown."""

    if not method_id:
        return None
    wanted = method_id.strip().lower()
    for method in policy.payment_methods:
        if method.id.lower() == wanted:
            return method
    return None


__all__ = [
    "RiskLevel",
    "default_policy",
    "get_payment_method",
    "required_stake",
    "risk_level_for_score",
    "stake_multiplier",
]
