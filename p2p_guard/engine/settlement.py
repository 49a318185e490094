"""Issue settlement commands derived from dispute resolutions and penalties."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..errors import InternalError
from .disputes import Dispute, Resolution
from .metrics import MetricRegistry
from .stake import Penalty

logger = logging.getLogger(__name__)


class SettlementGateway(Protocol):
    """External collaborator that moves funds and stake on the ledger."""

    def release_funds(self, order_id: str) -> Any:
        ...

    def refund_funds(self, order_id: str) -> Any:
        ...

    def slash_stake(self, lp_address: str, amount: float, *, reason: str) -> Any:
        ...

    def ban_account(self, address: str, *, reason: str) -> Any:
        ...


@dataclass(frozen=True)
class SettlementCommand:
    op: str
    target: str
    amount: Optional[float] = None
    reason: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"op": self.op, "target": self.target}
        if self.amount is not None:
            payload["amount"] = self.amount
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


class LoggingSettlementGateway:
    """Gateway that only records and logs commands. Used when no ledger is wired."""

    def __init__(self) -> None:
        self.commands: List[SettlementCommand] = []
        self._lock = threading.Lock()

    def _record(self, command: SettlementCommand) -> SettlementCommand:
        with self._lock:
            self.commands.append(command)
        logger.info("Settlement command", extra=command.to_payload())
        return command

    def release_funds(self, order_id: str) -> SettlementCommand:
        return self._record(SettlementCommand("release_funds", order_id))

    def refund_funds(self, order_id: str) -> SettlementCommand:
        return self._record(SettlementCommand("refund_funds", order_id))

    def slash_stake(self, lp_address: str, amount: float, *, reason: str) -> SettlementCommand:
        return self._record(SettlementCommand("slash_stake", lp_address, amount=amount, reason=reason))

    def ban_account(self, address: str, *, reason: str) -> SettlementCommand:
        return self._record(SettlementCommand("ban_account", address, reason=reason))


def planned_commands(dispute: Dispute, resolution: Resolution) -> List[SettlementCommand]:
    """Translate a resolution's action set into ordered settlement commands."""

    actions = resolution.actions
    commands: List[SettlementCommand] = []
    if actions.funds_released:
        commands.append(SettlementCommand("release_funds", dispute.order_id))
    if actions.funds_refunded:
        commands.append(SettlementCommand("refund_funds", dispute.order_id))
    if actions.lp_slashed:
        stake = dispute.lp.stake or 0.0
        commands.append(
            SettlementCommand(
                "slash_stake",
                dispute.lp.address,
                amount=stake * resolution.slash_percentage / 100.0,
                reason=f"dispute:{dispute.id}",
            )
        )
    if actions.lp_banned:
        commands.append(SettlementCommand("ban_account", dispute.lp.address, reason=f"dispute:{dispute.id}"))
    if actions.user_banned:
        commands.append(SettlementCommand("ban_account", dispute.user.address, reason=f"dispute:{dispute.id}"))
    return commands


class SettlementExecutor:
    """Send commands to the gateway once; failures surface as :class:`InternalError`.

    Nothing is retried here. A partially applied slash or release can only be
    retried safely by the settlement side, which owns the idempotency keys.
    """

    def __init__(self, gateway: SettlementGateway, *, metrics: Optional[MetricRegistry] = None) -> None:
        self._gateway = gateway
        self._metrics = metrics or MetricRegistry()

    def execute(self, dispute: Dispute, resolution: Resolution) -> List[SettlementCommand]:
        commands = planned_commands(dispute, resolution)
        logger.info(
            "Executing dispute resolution",
            extra={
                "dispute": dispute.id,
                "decision": resolution.decision.value,
                "slash_percentage": resolution.slash_percentage,
                "commands": [command.op for command in commands],
            },
        )
        applied: List[SettlementCommand] = []
        for command in commands:
            self._send(command, context={"dispute": dispute.id, "applied": [c.op for c in applied]})
            applied.append(command)
        return applied

    def apply_penalty(self, lp_address: str, penalty: Penalty) -> SettlementCommand:
        command = SettlementCommand(
            "slash_stake", lp_address, amount=penalty.amount, reason=penalty.reason.value
        )
        self._send(command, context={"percentage": penalty.percentage})
        return command

    def _send(self, command: SettlementCommand, *, context: Mapping[str, Any]) -> None:
        try:
            if command.op == "release_funds":
                self._gateway.release_funds(command.target)
            elif command.op == "refund_funds":
                self._gateway.refund_funds(command.target)
            elif command.op == "slash_stake":
                self._gateway.slash_stake(command.target, float(command.amount or 0.0), reason=command.reason or "")
            elif command.op == "ban_account":
                self._gateway.ban_account(command.target, reason=command.reason or "")
            else:  # pragma: no cover - planned_commands only emits known ops
                raise ValueError(f"Unknown settlement op {command.op}")
        except Exception as exc:
            self._metrics.inc("settlement_errors_total", labels={"op": command.op})
            logger.error(
                "Settlement command failed",
                extra={**dict(context), **command.to_payload(), "error": str(exc)},
                exc_info=True,
            )
            raise InternalError(
                f"Settlement failed while executing {command.op}",
                details={"op": command.op, "target": command.target},
            ) from exc
        self._metrics.inc("settlement_commands_total", labels={"op": command.op})
