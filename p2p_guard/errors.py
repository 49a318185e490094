"""Error taxonomy shared by the decision engine and its HTTP surface."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


class GuardError(Exception):
    """Base class for errors surfaced to engine callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(GuardError):
    """Malformed or out-of-domain input. Nothing was mutated."""

    status_code = 400
    code = "validation_error"


class NotFoundError(GuardError):
    """Unknown dispute, user or order identity."""

    status_code = 404
    code = "not_found"


class ConflictError(GuardError):
    """The requested transition conflicts with the current state."""

    status_code = 409
    code = "conflict"


class InternalError(GuardError):
    """Unexpected failure, usually in a downstream collaborator."""

    status_code = 500
    code = "internal_error"


class ScoringFailedError(InternalError):
    """Risk scoring failed; the order is treated as blocked."""

    code = "scoring_failed"

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["blocked"] = True
        return payload


__all__ = [
    "ConflictError",
    "GuardError",
    "InternalError",
    "NotFoundError",
    "ScoringFailedError",
    "ValidationError",
]
