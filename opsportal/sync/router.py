"""
Global sync router
Status, health and control endpoints for the global order fetcher
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import SQLAlchemyError
from opsportal.core.dependencies import get_fetcher, verify_sync_token
from opsportal.core.exceptions import StorageUnavailableException, SyncFailedException
from opsportal.core.responses import success_response
from opsportal.resilience.circuit_breaker import CircuitState
from opsportal.sync.fetcher import GlobalOrderFetcher
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.get('/global-sync/status', tags=["Global Sync"])
async def get_global_sync_status(fetcher: GlobalOrderFetcher = Depends(get_fetcher)):
    """Current sync state, no storage access"""
    return success_response(
        "Global sync status retrieved",
        fetcher.get_status().model_dump(mode="json")
    )


@router.get('/global-sync/health', tags=["Global Sync"])
async def get_global_sync_health(fetcher: GlobalOrderFetcher = Depends(get_fetcher)):
    """Sync state plus storage derived stats and upstream gate state"""
    timer_started = fetcher.ensure_running()
    status_data = fetcher.get_status().model_dump(mode="json")
    try:
        stats = await fetcher.get_sync_stats()
    except (StorageUnavailableException, SQLAlchemyError) as e:
        logger.error(f"[GLOBAL_SYNC] Health check could not read order stats: {e}")
        raise StorageUnavailableException(
            "Could not read order statistics",
            {"status": status_data, "original_error": str(e)}
        )

    health = fetcher.get_health()
    degraded = (
        fetcher.retry_count > 0
        or health["circuit_breaker"]["state"] != CircuitState.CLOSED.value
    )
    return success_response(
        "Global sync health retrieved",
        {
            **status_data,
            **stats.model_dump(mode="json"),
            **health,
            "status": "degraded" if degraded else "healthy",
            "timer_started": timer_started
        }
    )


@router.post('/global-sync/sync', tags=["Global Sync"], dependencies=[Depends(verify_sync_token)])
async def force_global_sync(fetcher: GlobalOrderFetcher = Depends(get_fetcher)):
    """Run a sync cycle now, or join the one already running"""
    timer_started = fetcher.ensure_running()
    result = await fetcher.force_sync()
    if not result.success:
        raise SyncFailedException(
            result.error or "Global sync failed",
            {"result": result.model_dump(mode="json"), "retry_count": fetcher.retry_count}
        )
    return success_response(
        "Global sync completed",
        {**result.model_dump(mode="json"), "timer_started": timer_started}
    )


@router.get('/global-sync/quick', tags=["Global Sync"], dependencies=[Depends(verify_sync_token)])
async def quick_global_sync(fetcher: GlobalOrderFetcher = Depends(get_fetcher)):
    """Start a sync in the background and return immediately"""
    timer_started = fetcher.ensure_running()
    started = fetcher.trigger_background_sync()
    return success_response(
        "Background sync started" if started else "Sync already in progress",
        {"started": started, "timer_started": timer_started, "status": fetcher.get_status().model_dump(mode="json")}
    )


@router.post('/global-sync/start', tags=["Global Sync"], dependencies=[Depends(verify_sync_token)])
async def start_global_sync(fetcher: GlobalOrderFetcher = Depends(get_fetcher)):
    started = fetcher.start()
    return success_response(
        "Global sync started" if started else "Global sync already running",
        fetcher.get_status().model_dump(mode="json")
    )


@router.post('/global-sync/stop', tags=["Global Sync"], dependencies=[Depends(verify_sync_token)])
async def stop_global_sync(fetcher: GlobalOrderFetcher = Depends(get_fetcher)):
    stopped = fetcher.stop()
    return success_response(
        "Global sync stopped" if stopped else "Global sync was not running",
        fetcher.get_status().model_dump(mode="json")
    )


@router.get('/global-sync/events', tags=["Global Sync"])
async def get_global_sync_events(
    count: int = Query(20, ge=1, le=200),
    fetcher: GlobalOrderFetcher = Depends(get_fetcher)
):
    """Recent sync events for polling clients"""
    events = await fetcher.event_bus.recent_events(count) if fetcher.event_bus is not None else []
    return success_response(f"Retrieved {len(events)} sync events", events)


@router.get('/bitrix24/health', tags=["Bitrix24"])
async def get_bitrix24_health(fetcher: GlobalOrderFetcher = Depends(get_fetcher)):
    """Circuit breaker and rate limiter state plus a gated connectivity check"""
    configured = fetcher.get_health()["source_configured"]

    # Probing an open circuit would only add load to an upstream we already consider down
    connected = None
    if configured and fetcher.circuit_breaker.get_state() != CircuitState.OPEN:
        connected = await fetcher.check_connection()

    health = fetcher.get_health()
    circuit_state = fetcher.circuit_breaker.get_state()

    if not health["source_configured"]:
        status = "not_configured"
    elif circuit_state == CircuitState.OPEN or connected is False:
        status = "unhealthy"
    elif circuit_state == CircuitState.HALF_OPEN:
        status = "degraded"
    else:
        status = "healthy"

    return success_response(
        "Bitrix24 health retrieved",
        {**health, "connected": connected, "status": status}
    )
