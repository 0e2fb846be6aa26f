"""Request-id and access logging middleware."""

import uuid
import time
import logging

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("permgate")

REQUEST_ID_HEADER = "X-Request-Id"


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and log it with its authorization outcome.

    An incoming ``X-Request-Id`` is kept so ids can be followed across services.
    ``RequirePermission`` leaves its decision on ``request.state.authorization``.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.authorization = None
        start_time = time.time()

        response: Response = await call_next(request)

        duration = round((time.time() - start_time) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time-Ms"] = str(duration)

        decision = request.state.authorization
        if decision is None:
            outcome = "unchecked"
        elif decision.admin_bypass:
            outcome = "admin"
        else:
            outcome = "allowed" if decision.allowed else "denied"

        logger.info(
            "[%s] %s %s %s %sms authz=%s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration,
            outcome,
        )
        return response


def setup_middleware(app: FastAPI) -> None:
    """Configure all middleware for the application."""
    app.add_middleware(AccessLogMiddleware)
