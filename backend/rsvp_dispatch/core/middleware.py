"""HTTP middleware: CORS, request ids and API access logging"""
import logging
import time
import uuid
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rsvp_dispatch.core.config import settings
from rsvp_dispatch.core.security import log_api_access

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

REQUEST_ID_HEADER = "X-Request-ID"

# Health checks and metric scrapes get no access log line
QUIET_PATHS = ("/metrics", "/health")

DEV_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")


def get_allowed_origins():
    """The dashboard calls the job endpoints from the browser; cron and scripts do not need CORS"""
    origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        origins.extend(origin for origin in DEV_ORIGINS if origin not in origins)
    return origins


def setup_cors_middleware(app):
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Account-Id", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )


async def access_log_middleware(request: Request, call_next):
    """Tag each request with an id and write one access log line when it finishes"""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.monotonic()
    status_code = 500
    error = None

    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    except Exception as e:
        error = str(e)
        security_logger.error(f"Request {request_id} failed in middleware: {error}", exc_info=True)
        raise
    finally:
        if request.url.path not in QUIET_PATHS:
            log_api_access(
                request, status_code, error,
                request_id=request_id,
                duration_ms=round((time.monotonic() - started) * 1000, 1)
            )


async def global_exception_handler(request: Request, exc: Exception):
    """Last-resort handler; the request id lets operators find the traceback"""
    request_id = getattr(request.state, "request_id", None)
    logger.error(f"Unhandled exception in request {request_id}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "requestId": request_id}
    )
