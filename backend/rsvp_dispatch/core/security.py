"""Request identity dependencies and API access logging"""
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import Header, HTTPException, Request

from rsvp_dispatch.core.config import settings

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def require_account(x_account_id: Optional[str] = Header(None, alias="X-Account-Id")) -> int:
    """Dependency: return the calling account id forwarded by the upstream auth layer"""
    if not x_account_id:
        raise HTTPException(401, "Not authenticated.")
    try:
        account_id = int(x_account_id)
    except ValueError:
        raise HTTPException(401, "Invalid account header.")
    if account_id <= 0:
        raise HTTPException(401, "Invalid account header.")
    return account_id


def require_cron_secret(
    request: Request,
    authorization: Optional[str] = Header(None)
) -> None:
    """Dependency: only the external scheduler (Bearer CRON_SECRET) may trigger ticks"""
    expected = settings.CRON_SECRET
    provided = ""
    if authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]

    if not expected or not hmac.compare_digest(provided, expected):
        security_logger.warning(
            f"Rejected cron call - IP: {get_client_ip(request)}, Path: {request.url.path}"
        )
        raise HTTPException(401, "Invalid cron secret")


def get_client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def log_api_access(
    request: Request,
    status_code: int = 200,
    error: Optional[str] = None,
    request_id: Optional[str] = None,
    duration_ms: Optional[float] = None
):
    """Log one JSON line per API call"""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "account_id": request.headers.get("X-Account-Id"),
        "client_ip": get_client_ip(request),
        "status_code": status_code,
        "duration_ms": duration_ms,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
