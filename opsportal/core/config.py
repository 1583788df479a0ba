"""
Core configuration module
Centralizes environment variables and application settings
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/portal.db")

# Bitrix24
BITRIX_WEBHOOK_URL = os.getenv("BITRIX_WEBHOOK_URL") or os.getenv("BITRIX24_WEBHOOK_URL") or ""
BITRIX_ENABLED = os.getenv("BITRIX_ENABLED", "true").lower() == "true"
BITRIX_VERIFY_TLS = os.getenv("BITRIX_VERIFY_TLS", "true").lower() != "false"
BITRIX_TIMEOUT_SECONDS = float(os.getenv("BITRIX_TIMEOUT_SECONDS", "10"))
# Comma separated list of deal stages pulled into the portal
BITRIX_DEAL_STAGES = [
    stage.strip()
    for stage in os.getenv("BITRIX_DEAL_STAGES", "C2:PREPAYMENT_INVOICE,C2:EXECUTING").split(",")
    if stage.strip()
]

# Global order sync
SYNC_INTERVAL_SECONDS = int(os.getenv("SYNC_INTERVAL_SECONDS", "300"))
SYNC_FETCH_TIMEOUT_SECONDS = float(os.getenv("SYNC_FETCH_TIMEOUT_SECONDS", "15"))
SYNC_PAGE_SIZE = int(os.getenv("SYNC_PAGE_SIZE", "10"))
SYNC_MAX_DEALS = int(os.getenv("SYNC_MAX_DEALS", "50"))
SYNC_AUTOSTART = os.getenv("SYNC_AUTOSTART", "true").lower() == "true"
SYNC_API_TOKEN = os.getenv("SYNC_API_TOKEN")  # Optional, protects mutating sync endpoints

# Redis Configuration (sync event stream)
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_STREAM_PREFIX = os.getenv("REDIS_STREAM_PREFIX", "portal:")
SYNC_EVENTS_REDIS_ENABLED = os.getenv("SYNC_EVENTS_REDIS_ENABLED", "false").lower() == "true"
SYNC_EVENTS_STREAM_MAXLEN = int(os.getenv("SYNC_EVENTS_STREAM_MAXLEN", "1000"))

# Application
APP_VERSION = "1.4.0"
APP_TITLE = "Operations Portal API"


def get_redis_url() -> str:
    """Build Redis connection URL from the REDIS_* settings"""
    if REDIS_PASSWORD:
        return f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}"
    return f"redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}"
