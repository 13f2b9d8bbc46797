"""
Error taxonomy for the live campaign engine and its HTTP mapping.

Every error carries the platform, entity id and attempted action so an
operator can retry precisely. Validation and busy errors are raised before
any network call; conflict and upstream errors only after the adapter
returns.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LiveOpsError(Exception):
    code = "LIVEOPS_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        platform: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.platform = platform
        self.entity_id = entity_id
        self.action = action

    def with_context(self, platform: str, entity_id: str, action: str) -> "LiveOpsError":
        """Fill in any context the raiser did not know about. Returns self."""
        self.platform = self.platform or platform
        self.entity_id = self.entity_id or entity_id
        self.action = self.action or action
        return self

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "platform": self.platform,
                "entity_id": self.entity_id,
                "action": self.action,
            }
        }

    def __str__(self) -> str:
        where = ":".join(p for p in (self.platform, self.entity_id) if p)
        prefix = f"[{self.action} {where}] " if self.action or where else ""
        return f"{prefix}{self.message}"


class ValidationError(LiveOpsError):
    code = "VALIDATION_ERROR"
    status_code = 400


class UnknownPlatformError(ValidationError):
    code = "UNKNOWN_PLATFORM"


class ConflictError(LiveOpsError):
    code = "CONFLICT"
    status_code = 409


class BusyError(LiveOpsError):
    code = "BUSY"
    status_code = 409


class UpstreamError(LiveOpsError):
    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(self, message: str, *, rate_limited: bool = False, upstream_status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.rate_limited = rate_limited
        self.upstream_status = upstream_status
        if rate_limited:
            self.code = "RATE_LIMITED"
            self.status_code = 429


class SyncError(LiveOpsError):
    """Resync job failure. Logged by the scheduler, never surfaced as a mutation failure."""
    code = "SYNC_ERROR"
    status_code = 500


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LiveOpsError)
    async def _liveops_error_handler(_: Request, exc: LiveOpsError):
        if exc.status_code >= 500:
            logger.warning(f"Request failed: {exc}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def _unhandled(_: Request, exc: Exception):
        logger.error(f"Unhandled error: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error."}},
        )
