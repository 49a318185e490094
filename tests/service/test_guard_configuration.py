"""Tests for loading and overriding the service configuration."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from p2p_guard.config.models import AppConfig, PolicyConfig
from p2p_guard.configuration import (
    _debug_to_logging_level,
    apply_environment_overrides,
    configure_logging,
    load_app_config,
    parse_policy,
    validate_app_config,
)


def _write_config(tmp_path: Path, payload: object) -> Path:
    config_path = tmp_path / "configs" / "guard.json"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(payload), encoding="utf-8")
    return config_path


def test_empty_config_uses_defaults(tmp_path: Path) -> None:
    config = load_app_config(_write_config(tmp_path, {}))

    assert config.policy == PolicyConfig()
    assert config.liquidity_pool == []
    assert config.auth is None
    assert config.config_root == (tmp_path / "configs").resolve()


def test_top_level_must_be_object(tmp_path: Path) -> None:
    with pytest.raises(TypeError, match="must be a JSON object"):
        load_app_config(_write_config(tmp_path, []))


def test_invalid_json_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid JSON"):
        load_app_config(path)


def test_missing_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_app_config(tmp_path / "absent.json")


def test_policy_sections_merge_over_defaults() -> None:
    policy = parse_policy(
        {
            "fraud": {"max_orders_per_hour": 3},
            "stakes": {"min_stake": 25, "risk_multipliers": {"critical": 4}},
            "payment_methods": [{"id": "IMPS", "name": "IMPS", "risk_score": 30, "reversible": "yes"}],
        }
    )

    assert policy.fraud.max_orders_per_hour == 3
    assert policy.fraud.max_orders_per_day == 20
    assert policy.stakes.min_stake == 25.0
    assert isinstance(policy.stakes.min_stake, float)
    assert dict(policy.stakes.risk_multipliers) == {"low": 1.0, "medium": 1.5, "high": 2.0, "critical": 4.0}
    assert policy.payment_methods[0].id == "imps"
    assert policy.payment_methods[0].reversible is True


@pytest.mark.parametrize(
    "raw, message",
    [
        ({"fraud": {"max_orders": 3}}, "Unknown setting"),
        ({"fees": {}}, "Unknown policy section"),
        ({"slashing": {"dispute_lost": 30}}, "dispute_lost"),
        ({"risk_levels": {"low": 50, "medium": 40}}, "Risk level thresholds"),
        ({"stakes": {"min_stake": 6000}}, "Stake bounds"),
        ({"fraud": {"max_orders_per_hour": "many"}}, "must be numeric"),
        ({"reference_timezone": "Mars/Olympus"}, "timezone"),
    ],
)
def test_invalid_policy_is_rejected(raw, message) -> None:
    with pytest.raises(ValueError, match=message):
        parse_policy(raw)


def test_pool_arbitrators_and_auth_are_parsed(tmp_path: Path) -> None:
    payload = {
        "liquidity_pool": [
            {"address": "0xlp1", "stake": 500, "rate": 1.002},
            {"address": "0xlp2", "stake": "250", "available": "false"},
        ],
        "arbitrators": [{"address": "0xArb", "stake": 800, "completed_trades": 70, "dispute_rate": 0.01}],
        "auth": {
            "arbitrators": [{"address": "0xArb", "password_hash": "$2b$12$hash"}],
            "admins": ["0xARB"],
        },
        "state_path": "state/activity.json",
        "audit": {"log_path": "logs/audit.log"},
        "debug": "yes",
    }
    config_path = _write_config(tmp_path, payload)

    config = load_app_config(config_path)

    assert [provider.stake for provider in config.liquidity_pool] == [500, 250]
    assert config.liquidity_pool[1].available is False
    assert config.arbitrators[0].completed_trades == 70
    assert config.auth.arbitrators == {"0xarb": "$2b$12$hash"}
    assert config.auth.admins == ["0xarb"]
    assert config.state_path == (config_path.parent / "state" / "activity.json").resolve()
    assert config.audit.log_path == (config_path.parent / "logs" / "audit.log").resolve()
    assert config.debug is True


def test_duplicate_providers_are_rejected() -> None:
    with pytest.raises(ValueError, match="Duplicate"):
        validate_app_config({"liquidity_pool": [{"address": "0xa"}, {"address": "0xA"}]})


def test_admin_without_credentials_is_rejected() -> None:
    with pytest.raises(ValueError, match="admins without credentials"):
        validate_app_config({"auth": {"arbitrators": {"0xa": "hash"}, "admins": ["0xb"]}})


def test_environment_overrides_policy_fields(tmp_path: Path) -> None:
    env = {
        "P2P_GUARD_FRAUD__MAX_ORDERS_PER_HOUR": "3",
        "P2P_GUARD_STAKES__MIN_STAKE": "25",
        "P2P_GUARD_LIQUIDITY__FALLBACK_TO_POOL": "false",
        "P2P_GUARD_ORDERS__MAX_AMOUNT": "lots",
        "P2P_GUARD_UNKNOWN__FIELD": "1",
        "P2P_GUARD_DEBUG": "1",
        "P2P_GUARD_STATE_PATH": str(tmp_path / "state.json"),
        "P2P_GUARD_AUDIT_LOG": str(tmp_path / "audit.log"),
    }

    config = apply_environment_overrides(AppConfig(), env)

    assert config.policy.fraud.max_orders_per_hour == 3
    assert config.policy.stakes.min_stake == 25.0
    assert config.policy.liquidity.fallback_to_pool is False
    assert config.policy.orders.max_amount == 10000
    assert config.debug is True
    assert config.state_path == tmp_path / "state.json"
    assert config.audit.log_path == tmp_path / "audit.log"


def test_environment_override_is_validated() -> None:
    with pytest.raises(ValueError):
        apply_environment_overrides(AppConfig(), {"P2P_GUARD_SLASHING__DISPUTE_LOST": "30"})


def test_debug_level_mapping() -> None:
    assert _debug_to_logging_level(0) == logging.WARNING
    assert _debug_to_logging_level(1) == logging.INFO
    assert _debug_to_logging_level(3) == logging.DEBUG


def test_configure_logging_raises_package_level() -> None:
    root_logger = logging.getLogger()
    package_logger = logging.getLogger("p2p_guard")
    previous = (root_logger.level, package_logger.level)
    try:
        package_logger.setLevel(logging.WARNING)
        configure_logging(2)
        assert package_logger.level == logging.DEBUG
        assert root_logger.level == logging.DEBUG
    finally:
        root_logger.setLevel(previous[0])
        package_logger.setLevel(previous[1])
