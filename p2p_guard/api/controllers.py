"""Translate wire payloads into engine calls and engine results into wire payloads."""

from __future__ import annotations

import math
from typing import Any, Dict, Mapping, Optional

from ..engine.disputes import Dispute
from ..engine.lp_matcher import pool_summary
from ..engine.risk_scorer import OrderAnalysisData
from ..engine.service import TradeGuardEngine
from ..errors import ScoringFailedError, ValidationError

SCORING_FAILED_MESSAGE = "Fraud analysis failed"


def _require_mapping(payload: Any, description: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError(f"{description} must be an object")
    return payload


def _require_text(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value.strip()


def _optional_text(payload: Mapping[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    value = payload.get(key)
    if value is None or value == "":
        return default
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"{key} must be a string")
    return str(value).strip()


def _require_number(payload: Mapping[str, Any], key: str) -> float:
    if payload.get(key) is None:
        raise ValidationError(f"{key} is required")
    return _number(payload, key)


def _optional_number(payload: Mapping[str, Any], key: str) -> Optional[float]:
    if payload.get(key) is None:
        return None
    return _number(payload, key)


def _number(payload: Mapping[str, Any], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be numeric") from exc
    if not math.isfinite(number):
        raise ValidationError(f"{key} must be finite")
    return number


def _optional_bool(payload: Mapping[str, Any], key: str, default: bool = False) -> bool:
    value = payload.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be a boolean")
    return value


def parse_order(payload: Any, *, ip_address: str = "unknown") -> OrderAnalysisData:
    """Parse ``{orderData: {amountUsdc, paymentMethod?, fiatCurrency?, deviceId?}, userAddress}``."""

    body = _require_mapping(payload, "Request body")
    order_data = _require_mapping(body.get("orderData"), "orderData")
    if order_data.get("amountUsdc") is None:
        raise ValidationError("orderData.amountUsdc is required")
    return OrderAnalysisData(
        amount_usdc=_number(order_data, "amountUsdc"),
        user_address=_require_text(body, "userAddress"),
        payment_method=_optional_text(order_data, "paymentMethod", "upi") or "upi",
        fiat_currency=_optional_text(order_data, "fiatCurrency", "INR") or "INR",
        ip_address=ip_address,
        device_id=_optional_text(order_data, "deviceId"),
    )


class GuardController:
    """Request-level operations used by the HTTP handlers."""

    def __init__(self, engine: TradeGuardEngine) -> None:
        self.engine = engine

    # Risk -------------------------------------------------------------
    def analyze(self, payload: Any, *, ip_address: str = "unknown") -> Dict[str, Any]:
        order = parse_order(payload, ip_address=ip_address)
        assessment = self.engine.assess_order(order)
        if assessment.failed_closed:
            raise ScoringFailedError(SCORING_FAILED_MESSAGE)
        return {"success": True, **assessment.to_payload()}

    def risk_profile(self, address: Optional[str]) -> Dict[str, Any]:
        if not address or not address.strip():
            raise ValidationError("address is required")
        history = self.engine.risk_profile(address.strip())
        return {"success": True, "history": history.to_payload()}

    def admit_order(self, payload: Any, *, ip_address: str = "unknown") -> Dict[str, Any]:
        order = parse_order(payload, ip_address=ip_address)
        order_type = _optional_text(_require_mapping(payload, "Request body"), "type", "buy") or "buy"
        decision = self.engine.admit_order(order, order_type)
        if decision.assessment.failed_closed:
            raise ScoringFailedError(SCORING_FAILED_MESSAGE)
        return decision.to_payload()

    # Activity ---------------------------------------------------------
    def record_activity(self, payload: Any) -> Dict[str, Any]:
        body = _require_mapping(payload, "Request body")
        history = self.engine.record_order(
            _require_text(body, "userAddress"),
            _require_number(body, "amount"),
            completed=_optional_bool(body, "completed"),
            disputed=_optional_bool(body, "disputed"),
        )
        return {"success": True, "history": history.to_payload()}

    def complete_activity(self, payload: Any) -> Dict[str, Any]:
        body = _require_mapping(payload, "Request body")
        history = self.engine.complete_order(_require_text(body, "userAddress"), _require_number(body, "amount"))
        return {"success": True, "history": history.to_payload()}

    def reset_hourly(self) -> Dict[str, Any]:
        return {"success": True, "usersReset": self.engine.reset_hourly()}

    def reset_daily(self) -> Dict[str, Any]:
        return {"success": True, "usersReset": self.engine.reset_daily()}

    # Disputes ---------------------------------------------------------
    def open_dispute(self, payload: Any) -> Dict[str, Any]:
        body = _require_mapping(payload, "Request body")
        dispute = self.engine.open_dispute(
            _require_text(body, "orderId"),
            _require_text(body, "userAddress"),
            _require_text(body, "lpAddress"),
            _require_number(body, "amount"),
            raised_by=_optional_text(body, "raisedBy", "user") or "user",
            reason=_optional_text(body, "reason", "") or "",
            lp_stake=_optional_number(body, "lpStake"),
            locked_rate=_optional_number(body, "lockedRate"),
            fiat_amount=_optional_number(body, "fiatAmount"),
        )
        return {"success": True, "dispute": self._dispute_payload(dispute)}

    def list_disputes(self, *, status: Optional[str] = None, address: Optional[str] = None) -> Dict[str, Any]:
        disputes = self.engine.list_disputes(status=status, address=address)
        return {"success": True, "disputes": [self._dispute_payload(item) for item in disputes]}

    def dispute_detail(self, dispute_id: str) -> Dict[str, Any]:
        dispute, tier = self.engine.dispute_detail(dispute_id)
        payload = dispute.to_payload(tier=tier)
        payload["adminDeadline"] = int(self.engine.resolver.admin_deadline(dispute.raised_at).timestamp() * 1000)
        return {"success": True, "dispute": payload}

    def submit_evidence(self, dispute_id: str, payload: Any) -> Dict[str, Any]:
        body = _require_mapping(payload, "Request body")
        screenshots = body.get("screenshots") or []
        if not isinstance(screenshots, list) or not all(isinstance(item, str) for item in screenshots):
            raise ValidationError("screenshots must be a list of strings")
        dispute = self.engine.submit_evidence(
            dispute_id,
            _require_text(body, "submittedBy"),
            utr_reference=_optional_text(body, "utrReference"),
            explanation=_optional_text(body, "explanation", "") or "",
            screenshots=screenshots,
        )
        return {"success": True, "dispute": self._dispute_payload(dispute)}

    def cast_vote(self, dispute_id: str, payload: Any, *, arbitrator: Optional[str] = None) -> Dict[str, Any]:
        body = _require_mapping(payload, "Request body")
        favor_user = body.get("favorUser")
        if not isinstance(favor_user, bool):
            raise ValidationError("favorUser must be a boolean")
        dispute, resolution = self.engine.cast_vote(
            dispute_id,
            arbitrator or _require_text(body, "arbitrator"),
            favor_user,
            reasoning=_optional_text(body, "reasoning", "") or "",
        )
        return {
            "success": True,
            "dispute": self._dispute_payload(dispute),
            "resolution": resolution.to_payload() if resolution else None,
        }

    def resolve_dispute(self, dispute_id: str, payload: Any, *, resolved_by: str = "arbitrator") -> Dict[str, Any]:
        body = _require_mapping(payload, "Request body")
        if "decision" not in body:
            raise ValidationError("decision is required")
        notes = body.get("notes", "")
        if notes is not None and not isinstance(notes, str):
            raise ValidationError("notes must be a string")
        resolution = self.engine.resolve_dispute(
            dispute_id,
            body.get("decision"),
            body.get("slashPercentage"),
            notes=notes or "",
            resolved_by=resolved_by,
        )
        return {"success": True, "resolution": resolution.to_payload()}

    def apply_penalty(self, payload: Any, *, actor: str = "system") -> Dict[str, Any]:
        body = _require_mapping(payload, "Request body")
        penalty = self.engine.apply_penalty(
            _require_text(body, "lpAddress"),
            _require_number(body, "stake"),
            _require_text(body, "reason"),
            actor=actor,
        )
        return {
            "success": True,
            "penalty": {
                "reason": penalty.reason.value,
                "percentage": penalty.percentage,
                "stake": penalty.stake,
                "amount": penalty.amount,
            },
        }

    # Liquidity --------------------------------------------------------
    def match(self, payload: Any) -> Dict[str, Any]:
        body = _require_mapping(payload, "Request body")
        result = self.engine.match_liquidity(_require_number(body, "amount"), _require_text(body, "type"))
        return result.to_payload()

    def pool(self) -> Dict[str, Any]:
        return pool_summary(self.engine.liquidity_pool())

    def health(self) -> Dict[str, Any]:
        return {"status": "ok", "metrics": self.engine.metrics.snapshot()}

    def _dispute_payload(self, dispute: Dispute) -> Dict[str, Any]:
        tier = self.engine.resolver.escalation_tier(dispute.raised_at, self.engine.clock())
        return dispute.to_payload(tier=tier)
