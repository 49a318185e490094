"""FastAPI application exposing the trade guard engine.

The routes are thin: payload parsing and shaping live in
:class:`p2p_guard.api.GuardController`, decisions in
:class:`p2p_guard.engine.TradeGuardEngine`.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from passlib.context import CryptContext
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.controllers import GuardController
from .config.models import AppConfig
from .engine.service import TradeGuardEngine
from .errors import GuardError, ValidationError

logger = logging.getLogger(__name__)

ARBITRATOR_HEADER = "X-Arbitrator"
ARBITRATOR_KEY_HEADER = "X-Arbitrator-Key"


class AuthManager:
    """Verify arbitrator credentials for the dispute and scheduler endpoints."""

    def __init__(self, arbitrators: Mapping[str, str], admins: Iterable[str] = ()) -> None:
        if not arbitrators:
            raise ValueError("At least one arbitrator credential must be configured.")
        self.arbitrators = {str(address).lower(): hashed for address, hashed in arbitrators.items()}
        self.admins = {str(address).lower() for address in admins}
        self._password_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

    def authenticate(self, address: str, key: str) -> bool:
        hashed = self.arbitrators.get(address.lower())
        if not hashed:
            return False
        return self._password_context.verify(key, hashed)

    def is_admin(self, address: str) -> bool:
        return address.lower() in self.admins


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise ValidationError("Invalid JSON payload") from exc


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def create_app(
    config: AppConfig,
    *,
    engine: Optional[TradeGuardEngine] = None,
    auth_manager: Optional[AuthManager] = None,
) -> FastAPI:
    if engine is None:
        engine = TradeGuardEngine.from_config(config)
    if auth_manager is None and config.auth is not None:
        auth_manager = AuthManager(config.auth.arbitrators, config.auth.admins)
    if auth_manager is None:
        logger.warning("No arbitrator credentials configured; dispute and scheduler endpoints are open")

    app = FastAPI(title="P2P Trade Guard")
    app.state.engine = engine
    app.state.controller = GuardController(engine)
    app.state.auth_manager = auth_manager

    @app.exception_handler(GuardError)
    async def guard_error_handler(request: Request, exc: GuardError) -> JSONResponse:
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "Request rejected",
            extra={"path": request.url.path, "code": exc.code, "status": exc.status_code, "error": exc.message},
        )
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            {"success": False, "error": str(exc.detail)},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    def get_controller(request: Request) -> GuardController:
        return request.app.state.controller

    def _authenticated(request: Request) -> Optional[str]:
        manager: Optional[AuthManager] = request.app.state.auth_manager
        if manager is None:
            return None
        address = request.headers.get(ARBITRATOR_HEADER, "").strip()
        key = request.headers.get(ARBITRATOR_KEY_HEADER, "")
        if not address or not key or not manager.authenticate(address, key):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Arbitrator authentication required",
            )
        return address

    def require_arbitrator(request: Request) -> Optional[str]:
        return _authenticated(request)

    def require_admin(request: Request) -> Optional[str]:
        address = _authenticated(request)
        if address is not None and not request.app.state.auth_manager.is_admin(address):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
        return address

    @app.get("/health", response_class=JSONResponse)
    async def health(controller: GuardController = Depends(get_controller)) -> JSONResponse:
        return JSONResponse(controller.health())

    @app.post("/api/fraud/analyze", response_class=JSONResponse)
    async def api_analyze(request: Request, controller: GuardController = Depends(get_controller)) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(controller.analyze(payload, ip_address=_client_ip(request)))

    @app.get("/api/fraud/analyze", response_class=JSONResponse)
    async def api_risk_profile(
        address: Optional[str] = None,
        controller: GuardController = Depends(get_controller),
    ) -> JSONResponse:
        return JSONResponse(controller.risk_profile(address))

    @app.post("/api/orders", response_class=JSONResponse)
    async def api_admit_order(request: Request, controller: GuardController = Depends(get_controller)) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(controller.admit_order(payload, ip_address=_client_ip(request)))

    @app.post("/api/activity", response_class=JSONResponse)
    async def api_record_activity(
        request: Request,
        controller: GuardController = Depends(get_controller),
        _: Optional[str] = Depends(require_admin),
    ) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(controller.record_activity(payload))

    @app.post("/api/activity/complete", response_class=JSONResponse)
    async def api_complete_activity(
        request: Request,
        controller: GuardController = Depends(get_controller),
        _: Optional[str] = Depends(require_admin),
    ) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(controller.complete_activity(payload))

    @app.post("/api/activity/reset-hourly", response_class=JSONResponse)
    async def api_reset_hourly(
        controller: GuardController = Depends(get_controller),
        _: Optional[str] = Depends(require_admin),
    ) -> JSONResponse:
        return JSONResponse(controller.reset_hourly())

    @app.post("/api/activity/reset-daily", response_class=JSONResponse)
    async def api_reset_daily(
        controller: GuardController = Depends(get_controller),
        _: Optional[str] = Depends(require_admin),
    ) -> JSONResponse:
        return JSONResponse(controller.reset_daily())

    @app.post("/api/disputes", response_class=JSONResponse)
    async def api_open_dispute(request: Request, controller: GuardController = Depends(get_controller)) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(controller.open_dispute(payload), status_code=status.HTTP_201_CREATED)

    @app.get("/api/disputes", response_class=JSONResponse)
    async def api_list_disputes(
        status_filter: Optional[str] = Query(None, alias="status"),
        address: Optional[str] = None,
        controller: GuardController = Depends(get_controller),
    ) -> JSONResponse:
        return JSONResponse(controller.list_disputes(status=status_filter, address=address))

    @app.get("/api/disputes/{dispute_id}", response_class=JSONResponse)
    async def api_dispute_detail(dispute_id: str, controller: GuardController = Depends(get_controller)) -> JSONResponse:
        return JSONResponse(controller.dispute_detail(dispute_id))

    @app.post("/api/disputes/{dispute_id}/evidence", response_class=JSONResponse)
    async def api_submit_evidence(
        dispute_id: str,
        request: Request,
        controller: GuardController = Depends(get_controller),
    ) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(controller.submit_evidence(dispute_id, payload))

    @app.post("/api/disputes/{dispute_id}/votes", response_class=JSONResponse)
    async def api_cast_vote(
        dispute_id: str,
        request: Request,
        controller: GuardController = Depends(get_controller),
        arbitrator: Optional[str] = Depends(require_arbitrator),
    ) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(controller.cast_vote(dispute_id, payload, arbitrator=arbitrator))

    @app.post("/api/disputes/{dispute_id}/resolve", response_class=JSONResponse)
    async def api_resolve_dispute(
        dispute_id: str,
        request: Request,
        controller: GuardController = Depends(get_controller),
        arbitrator: Optional[str] = Depends(require_arbitrator),
    ) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(
            controller.resolve_dispute(dispute_id, payload, resolved_by=arbitrator or "arbitrator")
        )

    @app.post("/api/penalties", response_class=JSONResponse)
    async def api_apply_penalty(
        request: Request,
        controller: GuardController = Depends(get_controller),
        admin: Optional[str] = Depends(require_admin),
    ) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(controller.apply_penalty(payload, actor=admin or "system"))

    @app.post("/api/lp", response_class=JSONResponse)
    async def api_match_lp(request: Request, controller: GuardController = Depends(get_controller)) -> JSONResponse:
        payload = await _json_body(request)
        return JSONResponse(controller.match(payload))

    @app.get("/api/lp", response_class=JSONResponse)
    async def api_lp_pool(controller: GuardController = Depends(get_controller)) -> JSONResponse:
        return JSONResponse(controller.pool())

    return app


__all__ = ["ARBITRATOR_HEADER", "ARBITRATOR_KEY_HEADER", "AuthManager", "create_app"]
