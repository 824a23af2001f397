"""Authentication middleware for bearer tokens"""
import logging
from typing import Dict, Optional

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from ..security import auth_failure_message, extract_token

logger = logging.getLogger(__name__)


class HeaderAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests whose ``Authorization`` token is not a known user.

    With no users configured every request is let through.
    """

    def __init__(self, app, users: Optional[Dict[str, str]] = None):
        super().__init__(app)
        self.users = dict(users or {})
        if not self.users:
            logger.warning("no users supplied, authentication is disabled")

    async def dispatch(self, request: Request, call_next):
        if not self.users:
            return await call_next(request)

        token = extract_token(request.headers.get("Authorization"))
        user = self.users.get(token)
        if user is None:
            return JSONResponse(
                {"message": auth_failure_message(token), "error": "Unauthorized"},
                status_code=status.HTTP_401_UNAUTHORIZED,
            )

        # Picked up by the request logging middleware
        request.state.user = user
        return await call_next(request)
