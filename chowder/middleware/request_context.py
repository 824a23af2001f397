"""
Middleware to add request context (request_id, etc.) and log every response.
"""

import logging
import time
import uuid

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from ..logging_config import level_for_status, log_with_context

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID and log one line when it completes."""

    async def dispatch(self, request: Request, call_next):
        request_id = uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        start = time.perf_counter()

        context = {
            "request_id": request_id,
            "host": request.headers.get("host", ""),
            "remote_address": request.client.host if request.client else "",
            "method": request.method,
            "request_uri": request.url.path + (f"?{request.url.query}" if request.url.query else ""),
            "proto": f"HTTP/{request.scope.get('http_version', '1.1')}",
            "user_agent": request.headers.get("user-agent", ""),
        }

        try:
            response = await call_next(request)
        except Exception as e:
            # Keep serving; the failure is reported to the client and the log
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "response returned",
                extra={**context, "status": 500, "duration_ms": duration_ms},
            )
            response = JSONResponse(
                {"error": str(e) or type(e).__name__},
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
            response.headers["X-Request-ID"] = request_id
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        user = getattr(request.state, "user", None)
        if user is not None:
            context["user"] = user
        log_with_context(
            logger,
            level_for_status(response.status_code),
            "response returned",
            **context,
            status=response.status_code,
            content_length=int(response.headers.get("content-length", 0)),
            duration_ms=duration_ms,
        )

        response.headers["X-Request-ID"] = request_id
        return response
