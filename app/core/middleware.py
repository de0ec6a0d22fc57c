import logging
import time
import uuid

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from app.core.logging import log_context

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request ID, binds it to the log context and logs request timing.

    The ID is taken from the incoming header when present so that mobile
    clients can correlate their own logs with ours.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.perf_counter()
        with log_context(request_id=request_id, path=request.url.path):
            try:
                response = await call_next(request)
            except Exception:
                logger.error(
                    f"Unhandled exception during {request.method} {request.url.path}",
                    exc_info=True,
                )
                raise

            elapsed_ms = round((time.perf_counter() - start_time) * 1000, 2)
            response.headers[self.header_name] = request_id

            message = (
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"({elapsed_ms} ms)"
            )
            if response.status_code >= 500:
                logger.error(message)
            elif response.status_code >= 400:
                logger.warning(message)
            else:
                logger.info(message)

        return response


def register_middlewares(app: FastAPI) -> None:
    """Register all middlewares with the FastAPI app."""
    app.add_middleware(RequestLoggingMiddleware, header_name="X-Request-ID")
