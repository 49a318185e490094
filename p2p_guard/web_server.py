"""Command line entry point for the p2p_guard HTTP service."""

from __future__ import annotations

import argparse
import copy
import importlib
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .audit import get_audit_logger
from .config.models import AppConfig
from .configuration import apply_environment_overrides, configure_logging, load_app_config

if TYPE_CHECKING:  # pragma: no cover - used only for type hints
    import uvicorn


logger = logging.getLogger(__name__)


def _import_uvicorn() -> "uvicorn":
    """Import :mod:`uvicorn` with a helpful error message when missing."""

    try:
        import uvicorn  # type: ignore[import]
    except ModuleNotFoundError as exc:  # pragma: no cover - depends on runtime environment
        raise ModuleNotFoundError(
            "The 'uvicorn' package is required to run the p2p_guard web server. "
            "Install p2p-guard with its default dependencies or add uvicorn to your environment."
        ) from exc
    return uvicorn


_INVALID_HTTP_REQUEST_FILTER_NAME = "suppress_invalid_http_request"


class _SuppressInvalidHttpRequestFilter(logging.Filter):
    """Filter out noisy uvicorn warnings emitted for malformed probes."""

    _TARGET_MESSAGE = "Invalid HTTP request received."

    def filter(self, record: logging.LogRecord) -> bool:
        return record.getMessage() != self._TARGET_MESSAGE


def _ensure_invalid_http_warning_filter(logging_config: dict) -> None:
    """Install a logging filter that suppresses uvicorn's invalid request warnings."""

    if not logging_config:
        return

    filters = logging_config.setdefault("filters", {})
    if _INVALID_HTTP_REQUEST_FILTER_NAME not in filters:
        filters[_INVALID_HTTP_REQUEST_FILTER_NAME] = {
            "()": f"{__name__}._SuppressInvalidHttpRequestFilter",
        }

    loggers = logging_config.setdefault("loggers", {})
    uvicorn_error = loggers.setdefault(
        "uvicorn.error", {"handlers": ["default"], "level": "INFO", "propagate": True}
    )
    logger_filters = uvicorn_error.setdefault("filters", [])
    if _INVALID_HTTP_REQUEST_FILTER_NAME not in logger_filters:
        logger_filters.append(_INVALID_HTTP_REQUEST_FILTER_NAME)


def _determine_uvicorn_logging(config: AppConfig) -> tuple[Optional[dict], str]:
    """Return the uvicorn logging config (``None`` keeps its default) and log level."""

    try:
        uvicorn_config = importlib.import_module("uvicorn.config")
    except ModuleNotFoundError:  # pragma: no cover - uvicorn not importable in tests
        return None, "debug" if config.debug else "info"

    base_config = getattr(uvicorn_config, "LOGGING_CONFIG", None)
    if base_config is None:  # pragma: no cover - unexpected configuration shape
        return None, "debug" if config.debug else "info"

    log_config = copy.deepcopy(base_config)
    _ensure_invalid_http_warning_filter(log_config)

    loggers = log_config.setdefault("loggers", {})
    guard_logger = loggers.setdefault(
        "p2p_guard", {"handlers": ["default"], "level": "INFO", "propagate": False}
    )
    if not guard_logger.get("handlers"):
        guard_logger["handlers"] = ["default"]
    guard_logger.setdefault("propagate", False)

    if not config.debug:
        return log_config, "info"

    guard_logger["level"] = "DEBUG"
    root_logger = loggers.setdefault("", {"handlers": ["default"], "level": "INFO"})
    root_logger["level"] = "DEBUG"
    return log_config, "debug"


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Launch the p2p_guard trade risk service")
    parser.add_argument(
        "--config",
        type=Path,
        default=os.environ.get("P2P_GUARD_CONFIG"),
        help="Path to the JSON configuration file (defaults to $P2P_GUARD_CONFIG, else built-in policy)",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host address for the web server")
    parser.add_argument("--port", type=int, default=8000, help="Port for the web server")
    parser.add_argument("--state-path", type=Path, help="Persist activity counters to this JSON file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--ssl-certfile", type=Path, help="Path to the TLS certificate file")
    parser.add_argument("--ssl-keyfile", type=Path, help="Path to the TLS private key file")
    args = parser.parse_args(argv)

    if bool(args.ssl_certfile) ^ bool(args.ssl_keyfile):
        parser.error("Both --ssl-certfile and --ssl-keyfile must be provided to enable HTTPS.")

    try:
        config = load_app_config(args.config) if args.config else AppConfig()
        config = apply_environment_overrides(config)
    except (FileNotFoundError, TypeError, ValueError) as exc:
        parser.error(str(exc))
    if args.state_path:
        config.state_path = args.state_path
    if args.debug:
        config.debug = True

    configure_logging(2 if config.debug else 1)
    if config.auth is None:
        logger.warning("Starting without arbitrator authentication; do not expose this service publicly")

    audit_logger = get_audit_logger(config.audit)
    if audit_logger:
        try:
            audit_logger.log(
                action="web_server.start",
                actor="system",
                details={"host": args.host, "port": args.port, "config": str(args.config or "")},
            )
        except Exception as exc:  # pragma: no cover - audit sink failure
            logger.warning("Failed to emit web server audit entry: %s", exc)

    log_config, log_level = _determine_uvicorn_logging(config)
    from .web import create_app  # imported lazily to avoid heavy dependencies at import time

    app = create_app(config)
    uvicorn = _import_uvicorn()
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_config=log_config,
        log_level=log_level,
        ssl_certfile=str(args.ssl_certfile) if args.ssl_certfile else None,
        ssl_keyfile=str(args.ssl_keyfile) if args.ssl_keyfile else None,
    )


if __name__ == "__main__":
    main()
