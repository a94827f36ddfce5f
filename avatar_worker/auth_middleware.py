"""
Shared-secret authentication middleware for the avatar worker.

All /avatar-tasks* endpoints require a valid X-Worker-Secret header matching
the WORKER_SHARED_SECRET environment variable. The web app attaches this
header (together with X-User-Id) when forwarding requests to the worker.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_PREFIX = "/avatar-tasks"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /avatar-tasks endpoints."""

    def __init__(self, app, secret: str = None, environment: str = None):
        super().__init__(app)
        self.secret = os.environ.get("WORKER_SHARED_SECRET", "") if secret is None else secret
        self.environment = environment or os.environ.get("ENVIRONMENT", "development")

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(PROTECTED_PREFIX):
            return await call_next(request)

        if not self.secret:
            # Development without the secret set: allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
