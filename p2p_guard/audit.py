"""Hash-chained JSONL audit trail for dispute, vote and penalty decisions."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

DEFAULT_REDACT_FIELDS: tuple[str, ...] = ("password", "secret", "token", "api_key", "apikey", "private_key")

REDACTED = "<redacted>"


@dataclass(frozen=True)
class AuditSettings:
    log_path: Path
    enabled: bool = True
    redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS


def _record_hash(body: Mapping[str, Any]) -> str:
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return sha256(canonical.encode("utf-8")).hexdigest()


def _field_key(name: Any) -> str:
    return str(name).replace("-", "_").replace(" ", "").lower()


def _scrub(value: Any, markers: Iterable[str]) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if any(marker in _field_key(key) for marker in markers) else _scrub(item, markers)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set)):
        return [_scrub(item, markers) for item in value]
    return value


class AuditLogWriter:
    """Appends records whose ``prev_hash`` links to the record before them.

    The chain resumes from the last record already on disk, so several
    processes started one after another extend the same log.
    """

    def __init__(self, path: Path, *, redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._markers = frozenset(_field_key(name) for name in redact_fields)
        self._lock = threading.Lock()
        self._last_hash = chain_tip(self.path)

    def log(self, action: str, actor: str, details: Optional[Mapping[str, Any]] = None) -> str:
        with self._lock:
            record: Dict[str, Any] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "action": str(action),
                "actor": str(actor),
                "details": _scrub(dict(details or {}), self._markers),
                "prev_hash": self._last_hash,
            }
            record["hash"] = _record_hash(record)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True, default=str) + "\n")
            self._last_hash = record["hash"]
        return self._last_hash


def iter_audit_entries(path: Path) -> Iterator[Dict[str, Any]]:
    path = Path(path)
    if not path.exists():
        return
    with path.open("r", encoding="utf-8") as handle:
        for number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable audit line", extra={"path": str(path), "line": number})


def chain_tip(path: Path) -> str:
    """Hash of the newest record in ``path``, or the genesis hash for an empty log."""

    tip = GENESIS_HASH
    for entry in iter_audit_entries(path):
        tip = str(entry.get("hash") or tip)
    return tip


def read_audit_entries(
    path: Path, *, limit: Optional[int] = None, action: Optional[str] = None
) -> list[Dict[str, Any]]:
    wanted = action.lower() if action else None
    entries = [
        entry
        for entry in iter_audit_entries(path)
        if wanted is None or str(entry.get("action", "")).lower() == wanted
    ]
    return entries[-limit:] if limit is not None else entries


def verify_chain(path: Path) -> bool:
    """True when every record hashes to its stored value and links to its predecessor."""

    previous = GENESIS_HASH
    for entry in iter_audit_entries(path):
        body = {key: value for key, value in entry.items() if key != "hash"}
        if body.get("prev_hash") != previous or _record_hash(body) != entry.get("hash"):
            return False
        previous = entry["hash"]
    return True


_writers: Dict[Path, AuditLogWriter] = {}
_writers_lock = threading.Lock()


def reset_audit_registry() -> None:
    with _writers_lock:
        _writers.clear()


def get_audit_logger(settings: Optional[AuditSettings]) -> Optional[AuditLogWriter]:
    """One shared writer per log file; ``None`` when auditing is off."""

    if settings is None or not settings.enabled:
        return None
    path = Path(settings.log_path)
    with _writers_lock:
        if path not in _writers:
            _writers[path] = AuditLogWriter(path, redact_fields=settings.redact_fields)
        return _writers[path]
