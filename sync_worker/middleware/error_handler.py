"""
Global Error Handler Middleware
Turns exceptions that escape a route into structured JSON responses

Known sync failures map to specific status codes; everything else is a 500.
HTTPException responses are produced inside the router and pass through.
"""
import logging
from typing import Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from sync_worker.services.sync.database import ConnectionNotFoundError
from sync_worker.services.sync.ledger import RunLedgerError
from sync_worker.services.sync.oauth import TokenServiceError

logger = logging.getLogger(__name__)

TOKEN_ERROR_STATUS = {"not_found": 404, "unauthorized": 401, "transient": 503}


def classify_exception(exc: Exception) -> Tuple[int, str]:
    """(status_code, public detail) for an unhandled exception."""
    if isinstance(exc, ConnectionNotFoundError):
        return 404, str(exc)
    if isinstance(exc, TokenServiceError):
        return TOKEN_ERROR_STATUS.get(exc.kind, 502), str(exc)
    if isinstance(exc, RunLedgerError):
        return 503, "Run ledger unavailable"
    return 500, "Internal server error"


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            status_code, detail = classify_exception(exc)
            log = logger.error if status_code >= 500 else logger.warning
            log(
                f"❌ {type(exc).__name__} during {request.method} {request.url.path} -> {status_code}",
                exc_info=status_code == 500,
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "request_id": getattr(request.state, "request_id", None)
                }
            )

            return JSONResponse(
                status_code=status_code,
                content={
                    "ok": False,
                    "detail": detail,
                    "error_type": type(exc).__name__,
                    "path": request.url.path
                }
            )
