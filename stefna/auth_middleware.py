"""
Shared-secret authentication middleware for the generation worker.

All /jobs/* and /credits/* endpoints require a valid X-Worker-Secret header
matching WORKER_SHARED_SECRET.  The API layer attaches this header (and an
optional X-Worker-Timestamp) when forwarding user requests to the worker.
"""

import secrets
import time
from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import ErrorCode

PROTECTED_PREFIXES = ("/jobs", "/credits")


def _reject(code: ErrorCode, message: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": {"error": code.value, "message": message}})


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to job and credit endpoints."""

    def __init__(
        self,
        app,
        secret: str = "",
        environment: str = "development",
        max_skew_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(app)
        self._secret = secret
        self._environment = environment
        self._max_skew = max_skew_seconds
        self._clock = clock

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        # Health, metrics and docs stay public
        if not path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        if not self._secret:
            # In development without the secret set, allow all traffic
            if self._environment == "development":
                return await call_next(request)
            return JSONResponse(
                status_code=500,
                content={"detail": {"error": ErrorCode.INTERNAL_ERROR.value,
                                    "message": "WORKER_SHARED_SECRET not configured"}},
            )

        provided = request.headers.get("X-Worker-Secret", "")
        # Constant-time compare avoids timing attacks
        if not secrets.compare_digest(provided.encode(), self._secret.encode()):
            return _reject(ErrorCode.AUTH_REQUIRED, "Invalid or missing worker secret")

        stamp = request.headers.get("X-Worker-Timestamp")
        if stamp is not None:
            try:
                issued = float(stamp)
            except ValueError:
                return _reject(ErrorCode.AUTH_REQUIRED, "Malformed X-Worker-Timestamp")
            if self._clock() - issued > self._max_skew:
                return _reject(ErrorCode.TOKEN_EXPIRED, "Forwarded request has expired")

        return await call_next(request)
