"""
RequestContext Middleware - request id propagation and request logging.

Every request gets a request_id (an incoming X-Request-ID is reused so a
trigger delivery can be followed from sender to worker). The id is:
- stored on request.state, where route dependencies pass it to the audit trail
- bound into the structlog context, so service and repository log lines carry it
- echoed back in the X-Request-ID response header
"""

import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from mailsync.infrastructure.observability.logging import get_logger, request_log_context

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        with request_log_context(request_id):
            start_time = time.time()
            response = await call_next(request)
            logger.info(
                "HTTP request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
