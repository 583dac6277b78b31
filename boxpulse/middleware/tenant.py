"""
Tenant Middleware.

Every non-public request must carry a Bearer JWT. The verified box_id and
user_id claims are attached to request.state; queries downstream always
filter by that box_id.
"""

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from boxpulse.auth.jwt import TokenError, decode_token

logger = structlog.get_logger(__name__)

# Paths that bypass authentication
PUBLIC_PATHS = frozenset({
    "/health",
    "/ready",
    "/docs",
    "/openapi.json",
    "/redoc",
})


class TenantMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path

        # CORS preflight is answered by CORSMiddleware
        if request.method == "OPTIONS":
            return await call_next(request)

        if path in PUBLIC_PATHS or path.rstrip("/") in PUBLIC_PATHS:
            return await call_next(request)

        token = self._extract_token(request)
        if not token:
            return JSONResponse(
                status_code=401,
                content={"error": "unauthenticated", "detail": "Missing authentication token"},
            )

        try:
            payload = decode_token(token)
        except TokenError as e:
            logger.warning("tenant_auth_failed", error=str(e), path=path)
            return JSONResponse(
                status_code=401,
                content={"error": "unauthenticated", "detail": "Invalid or expired token"},
            )

        request.state.box_id = payload["box_id"]
        request.state.user_id = payload["user_id"]
        request.state.user_role = payload.get("role", "coach")
        structlog.contextvars.bind_contextvars(box_id=str(payload["box_id"]))

        return await call_next(request)

    def _extract_token(self, request: Request) -> str | None:
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            return auth[7:]
        return None
