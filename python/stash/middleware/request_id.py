"""X-Request-ID middleware for request correlation and access logging.

- Accepts a well-formed incoming X-Request-ID or generates a UUID v4
- Binds request_id, path and method into the logging context
- Echoes the ID in the response header
- Emits one request_completed event per request

Must be added LAST so it runs FIRST (FastAPI middleware runs in reverse
order of registration). Redirects issued by auth dependencies and error
envelopes then carry the same ID.
"""

import re
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from stash.logging import clear_request_context, get_logger, set_request_context

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

# Alphanumeric, dots, hyphens, underscores
VALID_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

logger = get_logger(__name__)


def normalize_request_id(value: str | None) -> str | None:
    """Return the canonical form of an acceptable request ID, else None.

    UUIDs are lowercased; other IDs must match the safe pattern and are kept
    as-is.
    """
    if not value or len(value.encode("utf-8")) > MAX_REQUEST_ID_LENGTH:
        return None
    if UUID_PATTERN.match(value):
        return value.lower()
    if VALID_REQUEST_ID_PATTERN.match(value):
        return value
    return None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware for X-Request-ID handling and access logging.

    Args:
        app: The ASGI application.
        log_requests: If True, log access entries for each request.
    """

    def __init__(self, app, log_requests: bool = True):
        super().__init__(app)
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.monotonic()

        request_id = normalize_request_id(request.headers.get(REQUEST_ID_HEADER))
        if request_id is None:
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        # Raw path only; query strings can carry OAuth codes and tickets
        set_request_context(request_id, path=request.url.path, method=request.method)

        try:
            response = await call_next(request)

            viewer = getattr(request.state, "viewer", None)
            if viewer is not None:
                set_request_context(request_id, user_id=viewer.user_id)

            response.headers[REQUEST_ID_HEADER] = request_id

            if self.log_requests:
                logger.info(
                    "request_completed",
                    status_code=response.status_code,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )

            return response

        except Exception:
            # Log and re-raise - unhandled_exception_handler will catch this
            logger.exception("request_failed")
            raise

        finally:
            clear_request_context()
