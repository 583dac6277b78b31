"""
Global Error Handler Middleware.

Last line of defence for exceptions no route or exception handler turned
into a response. Clients get a generic body with an error_id; the full
traceback goes to the server log under the same id.
"""

import traceback
import uuid

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from boxpulse.config import settings

logger = structlog.get_logger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Outermost application middleware.

    Response body:
    {
      "error": "internal_error",
      "detail": "human-readable message",
      "error_id": "uuid for log correlation"
    }
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            error_id = str(uuid.uuid4())
            logger.error(
                "unhandled_exception",
                error_id=error_id,
                path=request.url.path,
                method=request.method,
                error=str(exc),
                traceback=traceback.format_exc(),
            )

            body: dict = {
                "error": "internal_error",
                "detail": "An internal error occurred. Please try again later.",
                "error_id": error_id,
            }
            if settings.debug:
                body["debug_hint"] = type(exc).__name__

            return JSONResponse(status_code=500, content=body)
