"""Utilities for loading the p2p_guard service configuration."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Tuple, Type, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from p2p_guard.audit import DEFAULT_REDACT_FIELDS, AuditSettings
from p2p_guard.config.models import (
    AppConfig,
    AuthConfig,
    DisputePolicy,
    FraudPolicy,
    LiquidityPolicy,
    OrderLimits,
    PaymentMethod,
    PolicyConfig,
    RiskLevelThresholds,
    ScoringWeights,
    SlashingPolicy,
    StakePolicy,
    VerificationPolicy,
)
from p2p_guard.engine.disputes import ALLOWED_SLASH_PERCENTAGES, ArbitratorProfile
from p2p_guard.engine.lp_matcher import LiquidityProvider

ENV_PREFIX = "P2P_GUARD_"

_T = TypeVar("_T")

_POLICY_SECTIONS: Dict[str, type] = {
    "verification": VerificationPolicy,
    "fraud": FraudPolicy,
    "risk_levels": RiskLevelThresholds,
    "stakes": StakePolicy,
    "slashing": SlashingPolicy,
    "disputes": DisputePolicy,
    "orders": OrderLimits,
    "scoring": ScoringWeights,
    "liquidity": LiquidityPolicy,
}


def _ensure_logger_level(logger: logging.Logger, level: int) -> None:
    """Ensure ``logger`` and its handlers are set to at most ``level``."""

    if logger.level in {logging.NOTSET} or logger.level > level:
        logger.setLevel(level)
    for handler in logger.handlers:
        if handler.level in {logging.NOTSET} or handler.level > level:
            handler.setLevel(level)


def configure_logging(debug_level: int = 1) -> bool:
    """Provision basic logging and raise the ``p2p_guard`` logger to ``debug_level``.

    Returns ``True`` when this call installed the root handlers.
    """

    root_logger = logging.getLogger()
    already_configured = bool(root_logger.handlers)
    desired_level = _debug_to_logging_level(debug_level)

    if not already_configured:
        logging.basicConfig(
            level=desired_level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )

    _ensure_logger_level(root_logger, desired_level)
    _ensure_logger_level(logging.getLogger("p2p_guard"), desired_level)
    return not already_configured


def _debug_to_logging_level(debug_level: int) -> int:
    """Map a debug verbosity integer to a logging level."""

    if debug_level <= 0:
        return logging.WARNING
    if debug_level == 1:
        return logging.INFO
    return logging.DEBUG


def _load_json(path: Path) -> Dict[str, Any]:
    """Return parsed JSON payload from ``path`` with helpful error messages."""

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in configuration file {path}: {exc}") from exc


def _ensure_mapping(payload: Any, *, description: str) -> MutableMapping[str, Any]:
    """Return ``payload`` when it is a mapping, otherwise raise ``TypeError``."""

    if isinstance(payload, MutableMapping):
        return payload
    if isinstance(payload, Mapping):
        return dict(payload)
    raise TypeError(f"{description} must be a JSON object, not {type(payload).__name__}.")


def _ensure_list(payload: Any, *, description: str) -> List[Any]:
    if payload is None:
        return []
    if isinstance(payload, (Mapping, str, bytes)) or not isinstance(payload, Iterable):
        raise TypeError(f"{description} must be an array.")
    return list(payload)


def _resolve_path_relative_to(base: Path, candidate: Any) -> Path:
    """Return an absolute path for ``candidate`` relative to ``base`` when required."""

    path = Path(str(candidate)).expanduser()
    if not path.is_absolute():
        path = (base / path).resolve()
    else:
        path = path.resolve()
    return path


def _coerce_bool(value: Any, default: bool = False) -> bool:
    """Return a boolean for ``value`` supporting common string representations."""

    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"", "default", "auto"}:
            return default
        if lowered in {"1", "true", "yes", "on", "enabled", "enable"}:
            return True
        if lowered in {"0", "false", "no", "off", "disabled", "disable"}:
            return False
    return bool(value)


def _coerce_field(type_name: str, value: Any, *, current: Any, description: str) -> Any:
    """Coerce ``value`` to the declared type of a policy field."""

    if type_name == "bool":
        return _coerce_bool(value, current)
    if type_name == "str":
        return str(value)
    if isinstance(value, bool):
        raise ValueError(f"{description} must be numeric, got {value!r}.")
    try:
        if type_name == "int":
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(value)
            return int(value)
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{description} must be numeric, got {value!r}.") from exc


def _field_types(cls: type) -> Dict[str, str]:
    # Models use postponed annotations, so ``field.type`` is the annotation text.
    return {item.name: str(item.type) for item in dataclasses.fields(cls)}


def _merge_section(cls: Type[_T], base: _T, raw: Any, *, description: str) -> _T:
    """Return ``base`` with the keys of ``raw`` applied; unknown keys are rejected."""

    if raw is None:
        return base
    overrides = _ensure_mapping(raw, description=description)
    types = _field_types(cls)
    changes: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in types:
            raise ValueError(f"Unknown setting '{key}' in {description}.")
        current = getattr(base, key)
        if key == "risk_multipliers":
            multipliers = dict(current)
            for level, factor in _ensure_mapping(value, description=f"{description} '{key}'").items():
                multipliers[str(level).lower()] = float(factor)
            changes[key] = MappingProxyType(multipliers)
            continue
        changes[key] = _coerce_field(types[key], value, current=current, description=f"{description} '{key}'")
    return dataclasses.replace(base, **changes)


def _parse_payment_methods(raw: Any) -> Tuple[PaymentMethod, ...]:
    methods: List[PaymentMethod] = []
    for entry in _ensure_list(raw, description="Policy 'payment_methods'"):
        data = _ensure_mapping(entry, description="Payment method entry")
        method_id = data.get("id")
        if not method_id:
            raise ValueError("Payment method entries require an 'id'.")
        methods.append(
            PaymentMethod(
                id=str(method_id).lower(),
                name=str(data.get("name") or method_id),
                risk_score=float(data.get("risk_score", 0)),
                reversible=_coerce_bool(data.get("reversible"), False),
                settlement_time=str(data.get("settlement_time", "instant")),
                requires_extra_verification=_coerce_bool(data.get("requires_extra_verification"), False),
            )
        )
    if not methods:
        raise ValueError("Policy 'payment_methods' must list at least one method.")
    return tuple(methods)


def parse_policy(raw: Any, *, base: Optional[PolicyConfig] = None) -> PolicyConfig:
    """Merge the ``policy`` object of a configuration payload over ``base``."""

    policy = base or PolicyConfig()
    if raw is None:
        return policy
    data = _ensure_mapping(raw, description="Configuration 'policy'")
    changes: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _POLICY_SECTIONS:
            changes[key] = _merge_section(
                _POLICY_SECTIONS[key], getattr(policy, key), value, description=f"policy '{key}'"
            )
        elif key == "payment_methods":
            if value is not None:
                changes[key] = _parse_payment_methods(value)
        elif key == "reference_timezone":
            changes[key] = str(value)
        else:
            raise ValueError(f"Unknown policy section '{key}'.")
    policy = dataclasses.replace(policy, **changes)
    validate_policy(policy)
    return policy


def validate_policy(policy: PolicyConfig) -> None:
    """Raise ``ValueError`` when ``policy`` is internally inconsistent."""

    levels = policy.risk_levels
    if not 0 <= levels.low <= levels.medium <= levels.high <= 100:
        raise ValueError("Risk level thresholds must satisfy 0 <= low <= medium <= high <= 100.")
    stakes = policy.stakes
    if stakes.min_stake < 0 or stakes.min_stake > stakes.max_stake:
        raise ValueError("Stake bounds must satisfy 0 <= min_stake <= max_stake.")
    if any(factor <= 0 for factor in stakes.risk_multipliers.values()):
        raise ValueError("Stake risk multipliers must be positive.")
    fraud = policy.fraud
    if not 0 <= fraud.suspicious_hours_start <= fraud.suspicious_hours_end <= 24:
        raise ValueError("Suspicious hours must satisfy 0 <= start <= end <= 24.")
    if policy.slashing.dispute_lost not in ALLOWED_SLASH_PERCENTAGES:
        raise ValueError(
            f"Slashing 'dispute_lost' must be one of {', '.join(str(p) for p in ALLOWED_SLASH_PERCENTAGES)}."
        )
    orders = policy.orders
    if orders.min_amount <= 0 or orders.min_amount > orders.max_amount:
        raise ValueError("Order limits must satisfy 0 < min_amount <= max_amount.")
    if policy.disputes.votes_required < 1:
        raise ValueError("Disputes 'votes_required' must be at least 1.")
    try:
        ZoneInfo(policy.reference_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown reference timezone '{policy.reference_timezone}'.") from exc


def _parse_liquidity_pool(raw: Any) -> List[LiquidityProvider]:
    providers: List[LiquidityProvider] = []
    seen: set[str] = set()
    for entry in _ensure_list(raw, description="Configuration 'liquidity_pool'"):
        data = _ensure_mapping(entry, description="Liquidity provider entry")
        address = data.get("address")
        if not address:
            raise ValueError("Liquidity provider entries require an 'address'.")
        if str(address).lower() in seen:
            raise ValueError(f"Duplicate liquidity provider '{address}'.")
        seen.add(str(address).lower())
        stake = float(data.get("stake", 0))
        if stake < 0:
            raise ValueError(f"Liquidity provider '{address}' has a negative stake.")
        providers.append(
            LiquidityProvider(
                address=str(address),
                stake=stake,
                rate=float(data.get("rate", 1.0)),
                available=_coerce_bool(data.get("available"), True),
            )
        )
    return providers


def _parse_arbitrators(raw: Any) -> List[ArbitratorProfile]:
    profiles: List[ArbitratorProfile] = []
    for entry in _ensure_list(raw, description="Configuration 'arbitrators'"):
        data = _ensure_mapping(entry, description="Arbitrator entry")
        address = data.get("address")
        if not address:
            raise ValueError("Arbitrator entries require an 'address'.")
        profiles.append(
            ArbitratorProfile(
                address=str(address),
                stake=float(data.get("stake", 0)),
                completed_trades=int(data.get("completed_trades", 0)),
                dispute_rate=float(data.get("dispute_rate", 0)),
            )
        )
    return profiles


def _parse_auth(auth_raw: Optional[Mapping[str, Any]]) -> Optional[AuthConfig]:
    if not auth_raw:
        return None
    auth_raw = _ensure_mapping(auth_raw, description="Configuration 'auth'")
    users_raw = auth_raw.get("arbitrators")
    if not users_raw:
        raise ValueError("Authentication configuration requires at least one arbitrator entry.")
    if isinstance(users_raw, Mapping):
        arbitrators = {str(name).lower(): str(password) for name, password in users_raw.items()}
    else:
        arbitrators = {}
        for entry in _ensure_list(users_raw, description="Authentication 'arbitrators'"):
            if not isinstance(entry, Mapping):
                raise TypeError(
                    "Authentication 'arbitrators' entries must be objects with 'address' and 'password_hash'."
                )
            address = entry.get("address")
            password_hash = entry.get("password_hash")
            if not address or not password_hash:
                raise ValueError(
                    "Authentication 'arbitrators' entries must include both 'address' and 'password_hash'."
                )
            arbitrators[str(address).lower()] = str(password_hash)
    admins = [
        str(name).lower() for name in _ensure_list(auth_raw.get("admins"), description="Authentication 'admins'")
    ]
    unknown = [name for name in admins if name not in arbitrators]
    if unknown:
        raise ValueError(f"Authentication admins without credentials: {', '.join(unknown)}.")
    return AuthConfig(arbitrators=arbitrators, admins=admins)


def _parse_audit(raw: Any, *, base_dir: Path) -> Optional[AuditSettings]:
    if raw is None:
        return None
    data = _ensure_mapping(raw, description="Configuration 'audit'")
    enabled = _coerce_bool(data.get("enabled"), True)
    log_path = _resolve_path_relative_to(base_dir, data.get("log_path") or "audit/audit.log")
    redact_raw = data.get("redact_fields")
    redact_fields = (
        tuple(str(item) for item in _ensure_list(redact_raw, description="Audit 'redact_fields'"))
        if redact_raw is not None
        else DEFAULT_REDACT_FIELDS
    )
    return AuditSettings(log_path=log_path, enabled=enabled, redact_fields=redact_fields)


def load_app_payload(path: Path | str) -> tuple[MutableMapping[str, Any], Path]:
    """Load and return the raw configuration mapping from disk."""

    path = Path(path).expanduser().resolve()
    payload = _load_json(path)
    return _ensure_mapping(payload, description="p2p_guard configuration"), path


def validate_app_config(config: Mapping[str, Any], *, source_path: Optional[Path] = None) -> AppConfig:
    """Validate and normalise a configuration payload."""

    base_dir = source_path.parent.resolve() if source_path else Path.cwd()

    state_path: Optional[Path] = None
    if config.get("state_path"):
        state_path = _resolve_path_relative_to(base_dir, config["state_path"])

    debug_raw = config.get("debug", False)
    debug = _coerce_bool(debug_raw, False)

    return AppConfig(
        policy=parse_policy(config.get("policy")),
        liquidity_pool=_parse_liquidity_pool(config.get("liquidity_pool")),
        arbitrators=_parse_arbitrators(config.get("arbitrators")),
        auth=_parse_auth(config.get("auth")),
        audit=_parse_audit(config.get("audit"), base_dir=base_dir),
        state_path=state_path,
        debug=debug,
        config_root=base_dir,
        config_path=source_path,
    )


def load_app_config(path: Path | str) -> AppConfig:
    """Load and validate a configuration file from disk."""

    payload, resolved_path = load_app_payload(path)
    return validate_app_config(payload, source_path=resolved_path)


def apply_environment_overrides(config: AppConfig, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Apply ``P2P_GUARD_*`` environment variables on top of ``config``.

    ``P2P_GUARD_<SECTION>__<FIELD>`` overrides a policy field, for example
    ``P2P_GUARD_FRAUD__MAX_ORDERS_PER_HOUR=3``. Unparseable values are ignored.
    """

    env = os.environ if env is None else env

    state_path = env.get(f"{ENV_PREFIX}STATE_PATH")
    if state_path:
        config.state_path = Path(state_path).expanduser()
    debug = _env_bool(env.get(f"{ENV_PREFIX}DEBUG"))
    if debug is not None:
        config.debug = debug
    audit_path = env.get(f"{ENV_PREFIX}AUDIT_LOG")
    if audit_path:
        base = config.audit or AuditSettings(log_path=Path(audit_path))
        config.audit = dataclasses.replace(base, log_path=Path(audit_path).expanduser(), enabled=True)

    policy = config.policy
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX) or "__" not in key:
            continue
        section_name, _, field_name = key[len(ENV_PREFIX):].lower().partition("__")
        section_cls = _POLICY_SECTIONS.get(section_name)
        if section_cls is None:
            continue
        section = getattr(policy, section_name)
        type_name = _field_types(section_cls).get(field_name)
        if type_name is None or field_name == "risk_multipliers":
            continue
        parsed = _env_typed(type_name, value)
        if parsed is None:
            continue
        policy = dataclasses.replace(policy, **{section_name: dataclasses.replace(section, **{field_name: parsed})})
    if policy is not config.policy:
        validate_policy(policy)
        config.policy = policy
    return config


def _env_typed(type_name: str, value: Optional[str]) -> Any:
    if type_name == "bool":
        return _env_bool(value)
    if type_name == "int":
        return _env_int(value)
    if type_name == "float":
        return _env_float(value)
    return value


def _env_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _env_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


__all__ = [
    "AppConfig",
    "AuthConfig",
    "ENV_PREFIX",
    "PolicyConfig",
    "apply_environment_overrides",
    "configure_logging",
    "load_app_config",
    "load_app_payload",
    "parse_policy",
    "validate_app_config",
    "validate_policy",
]
