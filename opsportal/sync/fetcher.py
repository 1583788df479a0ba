"""
Global order fetcher
Pulls deals from Bitrix24 on a timer and on demand, and upserts them as orders.

Only one sync cycle runs at a time per process: the timer tick, forced syncs
and background syncs all share the same in-flight cycle task, and the cycle
body itself runs under an asyncio lock.
"""
import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy.exc import SQLAlchemyError
from opsportal import schemas
from opsportal.bitrix.client import BitrixClient
from opsportal.bitrix.transform import is_valid_order_number, transform_deal_to_order
from opsportal.core import config
from opsportal.core.exceptions import (
    BaseAPIException,
    BitrixException,
    BitrixRateLimitError,
    CircuitOpenError,
    StorageUnavailableException,
    TransformException
)
from opsportal.database import AsyncSessionLocal
from opsportal.orders import repository
from opsportal.resilience.circuit_breaker import CircuitBreaker
from opsportal.resilience.rate_limiter import RateLimiter
from opsportal.sync.events import SYNC_COMPLETED, SYNC_FAILED, SyncEventBus
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)


class GlobalOrderFetcher:
    """Scheduler and single-cycle runner for the global order sync"""

    def __init__(
        self,
        source: BitrixClient,
        session_factory=AsyncSessionLocal,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        event_bus: Optional[SyncEventBus] = None,
        interval_seconds: float = config.SYNC_INTERVAL_SECONDS,
        fetch_timeout_seconds: float = config.SYNC_FETCH_TIMEOUT_SECONDS,
        page_size: int = config.SYNC_PAGE_SIZE,
        max_deals: int = config.SYNC_MAX_DEALS
    ):
        """
        Args:
            source: Bitrix24 deal source, anything with an async fetch_deals(start, limit)
            session_factory: Callable returning an AsyncSession context manager
            interval_seconds: Period between timer driven cycles
            fetch_timeout_seconds: Timeout applied to every page request
            page_size: Deals requested per page
            max_deals: Upper bound of deals pulled per cycle
        """
        self.source = source
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter or RateLimiter()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.event_bus = event_bus
        self.interval_seconds = interval_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.page_size = page_size
        self.max_deals = max_deals

        self.is_running = False
        self.last_sync_at: Optional[datetime] = None
        self.retry_count = 0
        self.last_result: Optional[schemas.SyncResult] = None
        self.last_error: Optional[str] = None
        self.next_sync_at: Optional[datetime] = None

        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None
        self._ticker_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # Timer control

    def start(self) -> bool:
        """Start the recurring sync. The first cycle runs immediately.

        Returns False when the fetcher was already running.
        """
        if self.is_running:
            logger.info("[GLOBAL_SYNC] Fetcher already running")
            return False

        self.is_running = True
        self._stop_event = asyncio.Event()
        self._ticker_task = asyncio.create_task(self._run_ticker(self._stop_event))
        logger.info(f"[GLOBAL_SYNC] Started global order fetcher (interval: {self.interval_seconds}s)")
        return True

    def ensure_running(self) -> bool:
        """Restart the timer if it was stopped and the source is configured.

        Monitor pings call this so a stopped or never-started loop comes back.
        Returns True if the timer was started by this call.
        """
        if self.is_running or not self._source_configured():
            return False
        logger.info("[GLOBAL_SYNC] Fetcher not running, restarting timer")
        return self.start()

    def stop(self) -> bool:
        """Stop scheduling new cycles. A cycle already in flight runs to completion"""
        if not self.is_running:
            return False

        logger.info("[GLOBAL_SYNC] Stopping global order fetcher")
        self.is_running = False
        self.next_sync_at = None
        self.retry_count = 0
        if self._stop_event is not None:
            self._stop_event.set()
        return True

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop the timer and give the in-flight cycle up to `timeout` seconds to finish"""
        self.stop()
        pending = [task for task in (self._ticker_task, self._inflight) if task is not None and not task.done()]
        if not pending:
            return

        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            logger.warning("[GLOBAL_SYNC] Cancelling sync task that did not finish before shutdown")
            task.cancel()

    async def _run_ticker(self, stop_event: asyncio.Event) -> None:
        try:
            while not stop_event.is_set():
                try:
                    await self.force_sync()
                except Exception as e:
                    # Keep ticking, the next cycle gets another chance
                    logger.error(f"[GLOBAL_SYNC] Unexpected error in sync tick: {e}", exc_info=True)

                if stop_event.is_set():
                    break
                self.next_sync_at = datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("[GLOBAL_SYNC] Sync ticker cancelled")
            raise
        finally:
            logger.info("[GLOBAL_SYNC] Sync ticker stopped")

    # Triggers

    def _ensure_cycle(self) -> Tuple[asyncio.Task, bool]:
        """Return the in-flight cycle task, starting one if none is running"""
        if self._inflight is not None and not self._inflight.done():
            return self._inflight, False

        task = asyncio.create_task(self._run_cycle())
        self._inflight = task
        task.add_done_callback(self._clear_inflight)
        return task, True

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[GLOBAL_SYNC] Sync cycle task failed: {task.exception()}")

    async def force_sync(self) -> schemas.SyncResult:
        """Run a sync cycle now, or wait for the one already in flight.

        Never raises for cycle failures; check `success` on the result. The
        cycle is shielded so cancelling the caller does not cancel the sync.
        """
        task, started = self._ensure_cycle()
        if not started:
            logger.info("[GLOBAL_SYNC] Sync already in progress, waiting for it to finish")

        result = await asyncio.shield(task)
        if not started:
            return result.model_copy(update={"coalesced": True})
        return result

    def trigger_background_sync(self) -> bool:
        """Fire-and-forget sync. Returns True if a new cycle was started"""
        _, started = self._ensure_cycle()
        if started:
            logger.info("[GLOBAL_SYNC] Background sync triggered")
        else:
            logger.info("[GLOBAL_SYNC] Background sync requested while a cycle is in flight, skipping")
        return started

    # Cycle

    async def _fetch_page(self, start: int, limit: int) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self.source.fetch_deals(start, limit), timeout=self.fetch_timeout_seconds
            )
        except asyncio.TimeoutError:
            raise BitrixException(
                f"Bitrix24 fetch timed out after {self.fetch_timeout_seconds}s",
                {"start": start, "limit": limit}
            )

    async def _gated_fetch(self, start: int, limit: int) -> Dict[str, Any]:
        """One page request through the rate limiter and the circuit breaker.

        Every outbound Bitrix24 call goes through here so the limiter gets
        exactly one outcome per request it spaced.
        """
        await self.rate_limiter.wait_for_next_request()
        try:
            page = await self.circuit_breaker.execute(lambda: self._fetch_page(start, limit))
        except CircuitOpenError:
            # Nothing was sent, the rate limiter has nothing to learn
            logger.warning("[GLOBAL_SYNC] Circuit breaker open, skipping fetch")
            raise
        except BitrixRateLimitError:
            self.rate_limiter.on_rate_limit()
            raise
        except Exception:
            self.rate_limiter.on_error()
            raise
        self.rate_limiter.on_success()
        return page

    async def check_connection(self) -> bool:
        """Single-record connectivity check against Bitrix24"""
        try:
            await self._gated_fetch(0, 1)
        except BaseAPIException as e:
            logger.warning(f"[GLOBAL_SYNC] Bitrix24 connectivity check failed: {e.message}")
            return False
        return True

    async def _fetch_all_deals(self) -> List[Dict[str, Any]]:
        """Page through the source, newest first, up to max_deals"""
        deals: List[Dict[str, Any]] = []
        start = 0

        while len(deals) < self.max_deals:
            limit = min(self.page_size, self.max_deals - len(deals))
            page = await self._gated_fetch(start, limit)

            batch = page.get("result") or []
            deals.extend(batch)
            start += len(batch)
            logger.debug(f"[GLOBAL_SYNC] Fetched page of {len(batch)} deals ({len(deals)} so far)")

            if len(batch) < limit or start >= int(page.get("total") or 0):
                break

        return deals

    async def _store_deals(self, deals: List[Dict[str, Any]], result: schemas.SyncResult) -> None:
        async with self.session_factory() as db:
            for deal in deals:
                deal_id = deal.get("ID") if isinstance(deal, dict) else None
                try:
                    record = transform_deal_to_order(deal)
                except TransformException as e:
                    result.errors += 1
                    logger.warning(f"[GLOBAL_SYNC] Could not transform deal {deal_id}: {e.message}")
                    continue

                if not is_valid_order_number(record.order_number):
                    result.skipped += 1
                    logger.debug(f"[GLOBAL_SYNC] Skipping deal {deal_id} without a valid order number")
                    continue

                try:
                    outcome = await repository.upsert_order(db, record)
                except StorageUnavailableException:
                    raise
                except SQLAlchemyError as e:
                    result.errors += 1
                    logger.error(f"[GLOBAL_SYNC] Could not store deal {deal_id}: {e}")
                    continue

                if outcome == repository.UpsertOutcome.CREATED:
                    result.created += 1
                elif outcome == repository.UpsertOutcome.UPDATED:
                    result.updated += 1
                else:
                    result.skipped += 1

    async def _run_cycle(self) -> schemas.SyncResult:
        async with self._lock:
            started_at = datetime.now(timezone.utc)
            started = time.monotonic()
            result = schemas.SyncResult(started_at=started_at)
            logger.info("[GLOBAL_SYNC] Starting sync cycle")

            try:
                deals = await self._fetch_all_deals()
                result.fetched = len(deals)
                await self._store_deals(deals, result)
            except BaseAPIException as e:
                result.success = False
                result.error = e.message
                logger.error(f"[GLOBAL_SYNC] Sync cycle aborted: {e.message}")
            except Exception as e:
                result.success = False
                result.error = str(e) or e.__class__.__name__
                logger.error(f"[GLOBAL_SYNC] Sync cycle aborted by unexpected error: {e}", exc_info=True)

            result.finished_at = datetime.now(timezone.utc)
            result.duration_ms = round((time.monotonic() - started) * 1000, 2)

            if result.success:
                self._record_success(result)
                logger.info(
                    f"[GLOBAL_SYNC] Sync cycle completed: fetched={result.fetched}, created={result.created}, "
                    f"updated={result.updated}, skipped={result.skipped}, errors={result.errors}"
                )
            else:
                self._record_failure(result)

            self.last_result = result

        await self._emit(result)
        return result

    def _record_success(self, result: schemas.SyncResult) -> None:
        if self.last_sync_at is None or result.finished_at > self.last_sync_at:
            self.last_sync_at = result.finished_at
        self.retry_count = 0
        self.last_error = None

    def _record_failure(self, result: schemas.SyncResult) -> None:
        self.retry_count += 1
        self.last_error = result.error
        logger.warning(f"[GLOBAL_SYNC] Consecutive failed cycles: {self.retry_count}")

    async def _emit(self, result: schemas.SyncResult) -> None:
        if self.event_bus is None:
            return
        event_type = SYNC_COMPLETED if result.success else SYNC_FAILED
        await self.event_bus.publish(event_type, result.model_dump(mode="json"))

    # Introspection

    def is_syncing(self) -> bool:
        return self._lock.locked() or (self._inflight is not None and not self._inflight.done())

    def get_status(self) -> schemas.SyncStatus:
        return schemas.SyncStatus(
            is_running=self.is_running,
            is_syncing=self.is_syncing(),
            last_sync_at=self.last_sync_at,
            retry_count=self.retry_count,
            interval_ms=int(self.interval_seconds * 1000),
            next_sync_at=self.next_sync_at if self.is_running else None,
            last_result=self.last_result,
            last_error=self.last_error
        )

    async def get_sync_stats(self) -> schemas.SyncStats:
        """Storage derived stats. Raises StorageUnavailableException if the store is down"""
        async with self.session_factory() as db:
            total_orders = await repository.count_orders(db)
            most_recent = await repository.most_recent_order_timestamp(db)

        next_sync_in = None
        if self.is_running and self.next_sync_at is not None:
            next_sync_in = max(0.0, (self.next_sync_at - datetime.now(timezone.utc)).total_seconds())

        return schemas.SyncStats(
            total_orders=total_orders,
            most_recent_order_timestamp=most_recent,
            next_sync_in_seconds=next_sync_in
        )

    def _source_configured(self) -> bool:
        return self.source.is_configured() if hasattr(self.source, "is_configured") else True

    def get_health(self) -> Dict[str, Any]:
        return {
            "circuit_breaker": self.circuit_breaker.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
            "source_configured": self._source_configured()
        }
