"""Selection of a liquidity counterparty for an order."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from ..errors import ValidationError

if TYPE_CHECKING:  # pragma: no cover - used only for type hints
    from ..config.models import PolicyConfig

logger = logging.getLogger(__name__)

ORDER_TYPES = ("buy", "sell")


@dataclass(frozen=True)
class LiquidityProvider:
    address: str
    stake: float
    rate: float
    available: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MatchResult:
    matched: Optional[LiquidityProvider]
    is_high_value: bool
    estimated_rate: float
    message: str
    pooled: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": True,
            "matched": self.matched.to_payload() if self.matched else None,
            "isHighValue": self.is_high_value,
            "estimatedRate": self.estimated_rate,
            "message": self.message,
        }


class LPMatcher:
    """Pure matching policy over a pool snapshot."""

    def __init__(self, policy: "PolicyConfig") -> None:
        self._liquidity = policy.liquidity

    def pooled_provider(self, order_type: str) -> LiquidityProvider:
        rate = self._liquidity.buy_rate if order_type == "buy" else self._liquidity.sell_rate
        return LiquidityProvider(
            address=self._liquidity.pool_address,
            stake=self._liquidity.pool_stake,
            rate=rate,
            available=True,
        )

    def match(self, amount: float, order_type: str, pool: Iterable[LiquidityProvider]) -> MatchResult:
        amount = _validated_amount(amount)
        order_type = validate_order_type(order_type)
        is_high_value = amount >= self._liquidity.high_value_threshold

        if not is_high_value:
            baseline = self.pooled_provider(order_type)
            return MatchResult(
                matched=baseline,
                is_high_value=False,
                estimated_rate=baseline.rate,
                message=f"Matched with LP {baseline.address}",
                pooled=True,
            )

        minimum_stake = amount * self._liquidity.min_stake_ratio
        best: Optional[LiquidityProvider] = None
        for provider in pool:
            if not provider.available or provider.stake < minimum_stake:
                continue
            # Strict comparison keeps the first provider seen among equal stakes.
            if best is None or provider.stake > best.stake:
                best = provider

        if best is not None:
            logger.info(
                "Matched high value order",
                extra={"amount": amount, "type": order_type, "lp": best.address, "stake": best.stake},
            )
            return MatchResult(
                matched=best,
                is_high_value=True,
                estimated_rate=best.rate,
                message=f"Matched with LP {best.address}",
            )

        logger.warning(
            "No LP qualifies for high value order",
            extra={"amount": amount, "type": order_type, "minimum_stake": minimum_stake},
        )
        if self._liquidity.fallback_to_pool:
            baseline = self.pooled_provider(order_type)
            return MatchResult(
                matched=baseline,
                is_high_value=True,
                estimated_rate=baseline.rate,
                message=f"No suitable LP found, routed to {baseline.address}",
                pooled=True,
            )
        return MatchResult(
            matched=None,
            is_high_value=True,
            estimated_rate=self._liquidity.fallback_rate,
            message="No suitable LP found",
        )


def pool_summary(pool: Iterable[LiquidityProvider]) -> Dict[str, Any]:
    providers: List[LiquidityProvider] = list(pool)
    return {
        "providers": [provider.to_payload() for provider in providers],
        "totalLiquidity": sum(provider.stake for provider in providers),
    }


def _validated_amount(value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError("amount must be numeric")
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("amount must be numeric") from exc
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("amount must be greater than zero")
    return amount


def validate_order_type(value: Any) -> str:
    order_type = str(value or "").strip().lower()
    if order_type not in ORDER_TYPES:
        raise ValidationError("type must be 'buy' or 'sell'")
    return order_type
