"""Dataclasses describing the trading policy and the service configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, List, Mapping, Optional, Tuple

from ..audit import AuditSettings

if TYPE_CHECKING:  # pragma: no cover - used only for type hints
    from ..engine.disputes import ArbitratorProfile
    from ..engine.lp_matcher import LiquidityProvider


@dataclass(frozen=True)
class VerificationPolicy:
    """Payment verification thresholds."""

    auto_release_threshold: float = 85
    manual_review_threshold: float = 70
    timeout_minutes: int = 15
    utr_length: int = 12


@dataclass(frozen=True)
class FraudPolicy:
    """Velocity, wallet-age and amount-shape thresholds used by the scorer."""

    max_orders_per_hour: int = 5
    max_orders_per_day: int = 20
    new_wallet_age_hours: float = 168
    suspicious_hours_start: int = 2
    suspicious_hours_end: int = 5
    round_number_threshold: float = 100
    amount_escalation_threshold: float = 2.0


@dataclass(frozen=True)
class RiskLevelThresholds:
    """Upper (exclusive) score bounds for each level. Above ``high`` is critical."""

    low: float = 20
    medium: float = 40
    high: float = 60


def _default_multipliers() -> Mapping[str, float]:
    return MappingProxyType({"low": 1.0, "medium": 1.5, "high": 2.0, "critical": 3.0})


@dataclass(frozen=True)
class StakePolicy:
    """LP collateral requirements expressed against the order amount."""

    base_percentage: float = 5
    min_stake: float = 10
    max_stake: float = 5000
    risk_multipliers: Mapping[str, float] = field(default_factory=_default_multipliers)


@dataclass(frozen=True)
class SlashingPolicy:
    """Percent of the posted stake forfeited per violation."""

    order_timeout: float = 20
    fake_payment_proof: float = 100
    dispute_lost: float = 50
    # Reversals can take more than the whole stake.
    payment_reversal: float = 200
    late_release: float = 5


@dataclass(frozen=True)
class DisputePolicy:
    """Dispute timelines and arbitrator requirements."""

    auto_resolution_minutes: float = 5
    community_arbitration_hours: float = 4
    admin_review_hours: float = 24
    arbitrator_reward_bps: float = 50
    min_arbitrator_stake: float = 500
    min_arbitrator_trades: int = 50
    max_arbitrator_dispute_rate: float = 0.02
    votes_required: int = 3


@dataclass(frozen=True)
class OrderLimits:
    min_amount: float = 10
    max_amount: float = 10000
    expiry_minutes: int = 15


@dataclass(frozen=True)
class PaymentMethod:
    """Risk profile of a fiat payment rail."""

    id: str
    name: str
    risk_score: float
    reversible: bool = False
    settlement_time: str = "instant"
    requires_extra_verification: bool = False


def _default_payment_methods() -> Tuple[PaymentMethod, ...]:
    return (PaymentMethod(id="upi", name="UPI", risk_score=20),)


@dataclass(frozen=True)
class ScoringWeights:
    """Points contributed by each risk signal."""

    velocity_points: float = 40
    velocity_block_points: float = 40
    new_wallet_max_points: float = 25
    new_wallet_min_points: float = 5
    round_number_points: float = 5
    amount_escalation_points: float = 15
    suspicious_hour_points: float = 10
    dispute_points_per_case: float = 10
    dispute_points_cap: float = 30


@dataclass(frozen=True)
class LiquidityPolicy:
    """Matching rules and the pooled baseline counterparty."""

    high_value_threshold: float = 500
    min_stake_ratio: float = 0.5
    pool_address: str = "POOL_BASELINE"
    pool_stake: float = 10000
    buy_rate: float = 1.001
    sell_rate: float = 0.999
    fallback_rate: float = 1.0
    fallback_to_pool: bool = True


@dataclass(frozen=True)
class PolicyConfig:
    """Immutable parameter set consumed by every engine component."""

    verification: VerificationPolicy = field(default_factory=VerificationPolicy)
    fraud: FraudPolicy = field(default_factory=FraudPolicy)
    risk_levels: RiskLevelThresholds = field(default_factory=RiskLevelThresholds)
    stakes: StakePolicy = field(default_factory=StakePolicy)
    slashing: SlashingPolicy = field(default_factory=SlashingPolicy)
    disputes: DisputePolicy = field(default_factory=DisputePolicy)
    orders: OrderLimits = field(default_factory=OrderLimits)
    payment_methods: Tuple[PaymentMethod, ...] = field(default_factory=_default_payment_methods)
    scoring: ScoringWeights = field(default_factory=ScoringWeights)
    liquidity: LiquidityPolicy = field(default_factory=LiquidityPolicy)
    reference_timezone: str = "Asia/Kolkata"


@dataclass()
class AuthConfig:
    """Arbitrator credentials for the dispute endpoints (bcrypt hashes)."""

    arbitrators: Mapping[str, str]
    admins: List[str] = field(default_factory=list)


@dataclass()
class AppConfig:
    """Top level service configuration."""

    policy: PolicyConfig = field(default_factory=PolicyConfig)
    liquidity_pool: List["LiquidityProvider"] = field(default_factory=list)
    arbitrators: List["ArbitratorProfile"] = field(default_factory=list)
    auth: Optional[AuthConfig] = None
    audit: Optional[AuditSettings] = None
    state_path: Optional[Path] = None
    debug: bool = False
    config_root: Optional[Path] = None
    config_path: Optional[Path] = None


__all__ = [
    "AppConfig",
    "AuthConfig",
    "DisputePolicy",
    "FraudPolicy",
    "LiquidityPolicy",
    "OrderLimits",
    "PaymentMethod",
    "PolicyConfig",
    "RiskLevelThresholds",
    "ScoringWeights",
    "SlashingPolicy",
    "StakePolicy",
    "VerificationPolicy",
]
