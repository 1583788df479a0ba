"""
Core dependency injection functions
Used across the sync and orders routers
"""
import secrets
from typing import Optional
from fastapi import Header, Request
from opsportal.core import config
from opsportal.core.exceptions import AuthenticationException, SyncFailedException
from opsportal.database import get_db
from opsportal.sync.fetcher import GlobalOrderFetcher


def get_fetcher(request: Request) -> GlobalOrderFetcher:
    """The process wide fetcher built at startup"""
    fetcher = getattr(request.app.state, "fetcher", None)
    if fetcher is None:
        raise SyncFailedException("Global order fetcher is not initialized")
    return fetcher


async def verify_sync_token(
    x_sync_token: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None)
) -> None:
    """Require SYNC_API_TOKEN on mutating endpoints when one is configured"""
    expected = config.SYNC_API_TOKEN
    if not expected:
        return

    provided = x_sync_token
    if not provided and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()

    if not provided or not secrets.compare_digest(provided, expected):
        raise AuthenticationException("Missing or invalid sync token")


# Re-export for convenience
__all__ = ["get_db", "get_fetcher", "verify_sync_token"]
