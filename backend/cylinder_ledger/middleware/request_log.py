import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from cylinder_ledger.core.logging_config import actor_id_ctx_var, request_id_ctx_var

logger = logging.getLogger("cylinder_ledger.request")

ACTOR_HEADER = "X-Actor-Id"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_token = request_id_ctx_var.set(request_id)
        actor_token = actor_id_ctx_var.set(request.headers.get(ACTOR_HEADER) or None)
        request.state.request_id = request_id
        started = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            if response is not None:
                response.headers["X-Request-ID"] = request_id
                logger.info(
                    "request",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "status_code": response.status_code,
                        "duration_ms": int((time.perf_counter() - started) * 1000),
                    },
                )
            actor_id_ctx_var.reset(actor_token)
            request_id_ctx_var.reset(request_token)
