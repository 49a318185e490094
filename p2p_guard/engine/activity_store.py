"""Rolling per-user activity counters feeding the risk scorer.

Records are keyed by the lower-cased user identity. Every record owns a lock
that both the increment path and the epoch reset path acquire, so concurrent
updates for one user serialise while different users never contend.
"""

from __future__ import annotations

import json
import logging
import math
import tempfile
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..errors import ValidationError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DEFAULT_WALLET_AGE = timedelta(days=7)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserHistory:
    """Aggregate trading activity for one user."""

    orders_last_hour: int = 0
    orders_last_24h: int = 0
    average_order_amount: float = 0.0
    completed_orders: int = 0
    total_volume: float = 0.0
    dispute_count: int = 0
    wallet_created_at: Optional[datetime] = None

    def wallet_age_hours(self, now: datetime) -> Optional[float]:
        if self.wallet_created_at is None:
            return None
        return max(0.0, (now - self.wallet_created_at).total_seconds() / 3600.0)

    def to_payload(self) -> Dict[str, Any]:
        created_ms: Optional[int] = None
        if self.wallet_created_at is not None:
            created_ms = int(self.wallet_created_at.timestamp() * 1000)
        return {
            "ordersLastHour": self.orders_last_hour,
            "ordersLast24h": self.orders_last_24h,
            "averageOrderAmount": self.average_order_amount,
            "completedOrders": self.completed_orders,
            "totalVolume": self.total_volume,
            "disputeCount": self.dispute_count,
            "walletCreatedAt": created_ms,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "UserHistory":
        created_raw = payload.get("walletCreatedAt")
        created_at = None
        if created_raw is not None:
            created_at = datetime.fromtimestamp(float(created_raw) / 1000.0, tz=timezone.utc)
        return cls(
            orders_last_hour=max(0, int(payload.get("ordersLastHour", 0))),
            orders_last_24h=max(0, int(payload.get("ordersLast24h", 0))),
            average_order_amount=max(0.0, float(payload.get("averageOrderAmount", 0.0))),
            completed_orders=max(0, int(payload.get("completedOrders", 0))),
            total_volume=max(0.0, float(payload.get("totalVolume", 0.0))),
            dispute_count=max(0, int(payload.get("disputeCount", 0))),
            wallet_created_at=created_at,
        )


def normalise_user(user: str) -> str:
    if not isinstance(user, str) or not user.strip():
        raise ValidationError("User identity must be a non-empty string")
    return user.strip().lower()


class ActivityStore:
    """Interface of the activity counter store injected into the engine."""

    def get(self, user: str) -> UserHistory:  # pragma: no cover - interface
        raise NotImplementedError

    def record_order(
        self, user: str, amount: float, *, completed: bool = False, disputed: bool = False
    ) -> UserHistory:  # pragma: no cover - interface
        raise NotImplementedError

    def complete_order(self, user: str, amount: float) -> UserHistory:  # pragma: no cover - interface
        raise NotImplementedError

    def record_dispute(self, user: str) -> UserHistory:  # pragma: no cover - interface
        raise NotImplementedError

    def reset_hourly(self) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    def reset_daily(self) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    def known_users(self) -> List[str]:  # pragma: no cover - interface
        raise NotImplementedError

    def contains(self, user: str) -> bool:
        return normalise_user(user) in self.known_users()


class InMemoryActivityStore(ActivityStore):
    """Dictionary-backed store with per-key locking."""

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock = clock or utc_now
        self._records: Dict[str, UserHistory] = {}
        self._locks: Dict[str, threading.Lock] = {}
        # Guards creation of records and locks only; never held while counting.
        self._registry_lock = threading.Lock()

    def _entry(self, key: str) -> tuple[threading.Lock, UserHistory]:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                self._records[key] = UserHistory(wallet_created_at=self._clock() - DEFAULT_WALLET_AGE)
                logger.debug("Created activity record", extra={"user": key})
            return lock, self._records[key]

    def get(self, user: str) -> UserHistory:
        lock, record = self._entry(normalise_user(user))
        with lock:
            return replace(record)

    def contains(self, user: str) -> bool:
        key = normalise_user(user)
        with self._registry_lock:
            return key in self._records

    def record_order(
        self, user: str, amount: float, *, completed: bool = False, disputed: bool = False
    ) -> UserHistory:
        """Count a submitted order; ``completed`` also folds it into the running average."""

        amount = _validated_amount(amount)

        def apply(record: UserHistory) -> None:
            record.orders_last_hour += 1
            record.orders_last_24h += 1
            if completed:
                _complete(record, amount)
            if disputed:
                record.dispute_count += 1

        return self._mutate(user, apply)

    def complete_order(self, user: str, amount: float) -> UserHistory:
        """Mark an already counted order as completed."""

        amount = _validated_amount(amount)
        return self._mutate(user, lambda record: _complete(record, amount))

    def record_dispute(self, user: str) -> UserHistory:
        def apply(record: UserHistory) -> None:
            record.dispute_count += 1

        return self._mutate(user, apply)

    def reset_hourly(self) -> int:
        return self._reset(lambda record: setattr(record, "orders_last_hour", 0), "hourly")

    def reset_daily(self) -> int:
        return self._reset(lambda record: setattr(record, "orders_last_24h", 0), "daily")

    def known_users(self) -> List[str]:
        with self._registry_lock:
            return list(self._records)

    def snapshot_all(self) -> Dict[str, UserHistory]:
        result: Dict[str, UserHistory] = {}
        for key in self.known_users():
            lock, record = self._entry(key)
            with lock:
                result[key] = replace(record)
        return result

    def _mutate(self, user: str, apply: Callable[[UserHistory], None]) -> UserHistory:
        lock, record = self._entry(normalise_user(user))
        with lock:
            apply(record)
            snapshot = replace(record)
        self._after_mutation()
        return snapshot

    def _reset(self, apply: Callable[[UserHistory], None], epoch: str) -> int:
        keys = self.known_users()
        for key in keys:
            lock, record = self._entry(key)
            with lock:
                apply(record)
        logger.info("Reset activity counters", extra={"epoch": epoch, "users": len(keys)})
        self._after_mutation()
        return len(keys)

    def _load_records(self, records: Mapping[str, UserHistory]) -> None:
        with self._registry_lock:
            for key, record in records.items():
                self._locks.setdefault(key, threading.Lock())
                self._records[key] = record

    def _after_mutation(self) -> None:
        """Hook for subclasses that persist state."""


def _validated_amount(value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError("Order amount must be numeric")
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Order amount must be numeric") from exc
    if not math.isfinite(amount) or amount < 0:
        raise ValidationError("Order amount must be a non-negative number")
    return amount


def _complete(record: UserHistory, amount: float) -> None:
    record.completed_orders += 1
    record.total_volume += amount
    record.average_order_amount = record.total_volume / record.completed_orders


class FileActivityStore(InMemoryActivityStore):
    """In-memory store mirrored to a JSON file after every mutation."""

    def __init__(self, path: Path, *, clock: Optional[Clock] = None) -> None:
        super().__init__(clock=clock)
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._load_records(self._read())

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, UserHistory]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read activity state file %s: %s", self._path, exc)
            return {}
        users = payload.get("users") if isinstance(payload, Mapping) else None
        if not isinstance(users, Mapping):
            return {}
        records: Dict[str, UserHistory] = {}
        for key, value in users.items():
            if isinstance(value, Mapping):
                records[str(key).lower()] = UserHistory.from_payload(value)
        return records

    def _after_mutation(self) -> None:
        with self._write_lock:
            users = {key: record.to_payload() for key, record in self.snapshot_all().items()}
            try:
                _atomic_write(self._path, json.dumps({"users": users}, indent=2, sort_keys=True))
            except OSError as exc:
                logger.error("Failed to persist activity state %s: %s", self._path, exc)


def _atomic_write(path: Path, content: str) -> None:
    tmp = tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8")
    try:
        with tmp as handle:
            handle.write(content)
            handle.flush()
        Path(tmp.name).replace(path)
    except Exception:
        Path(tmp.name).unlink(missing_ok=True)
        raise

