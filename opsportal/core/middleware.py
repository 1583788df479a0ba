"""
HTTP middleware for the application
"""
from fastapi import Request
from opsportal.utils.logging import get_logger
import time

logger = get_logger(__name__)

# Uptime monitors hit these every minute; keep them at DEBUG
QUIET_PATHS = {"/health", "/global-sync/status", "/global-sync/health"}


async def request_logging_middleware(request: Request, call_next):
    """Log every request with its caller, status and duration"""
    start_time = time.time()

    client_ip = request.client.host if request.client else "unknown"
    method = request.method
    path = str(request.url.path)
    log = logger.debug if path in QUIET_PATHS else logger.info

    log(
        f"INCOMING REQUEST - Method: {method}, Path: {path}, "
        f"Client IP: {request.headers.get('X-Forwarded-For', client_ip)}, "
        f"User-Agent: {request.headers.get('User-Agent', 'N/A')}"
    )

    try:
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000
        log(
            f"REQUEST COMPLETE - Method: {method}, Path: {path}, "
            f"Status: {response.status_code}, Duration: {duration_ms:.2f}ms"
        )
        return response
    except Exception as e:
        duration_ms = (time.time() - start_time) * 1000
        logger.error(
            f"REQUEST ERROR - Method: {method}, Path: {path}, "
            f"Error: {str(e)}, Duration: {duration_ms:.2f}ms",
            exc_info=True
        )
        raise
