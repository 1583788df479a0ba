"""
Sync event bus
Notifies in-process subscribers and, optionally, a Redis Stream when a
global sync cycle finishes so UI clients can pick up fresh orders
"""
import asyncio
import inspect
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from redis import asyncio as aioredis
from redis.exceptions import RedisError
from opsportal.core import config
from opsportal.schemas import SyncEvent
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)

SYNC_COMPLETED = "sync.completed"
SYNC_FAILED = "sync.failed"

Subscriber = Callable[[SyncEvent], Any]


class SyncEventBus:
    """Fan-out of sync events to subscribers and the sync_events stream"""

    def __init__(
        self,
        redis_enabled: bool = config.SYNC_EVENTS_REDIS_ENABLED,
        redis_url: Optional[str] = None,
        stream_maxlen: int = config.SYNC_EVENTS_STREAM_MAXLEN,
        redis_client: Optional[aioredis.Redis] = None
    ):
        self.redis_enabled = redis_enabled or redis_client is not None
        self.redis_url = redis_url or config.get_redis_url()
        self.stream_name = f"{config.REDIS_STREAM_PREFIX}sync_events"
        self.stream_maxlen = stream_maxlen
        self.redis_client = redis_client
        self._subscribers: List[Subscriber] = []

    async def _get_redis(self) -> aioredis.Redis:
        """Get or create Redis connection"""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        return self.redis_client

    def subscribe(self, callback: Subscriber) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def publish(self, event_type: str, data: Dict[str, Any]) -> SyncEvent:
        """Deliver an event. Subscriber and Redis failures are logged, never raised"""
        event = SyncEvent(
            event_type=event_type,
            timestamp=datetime.now(timezone.utc),
            data=data
        )

        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[SYNC_EVENTS] Subscriber {callback!r} failed for {event_type}: {e}", exc_info=True)

        if self.redis_enabled:
            await self._publish_to_stream(event)

        logger.debug(f"[SYNC_EVENTS] Published {event_type} to {len(self._subscribers)} subscribers")
        return event

    async def _publish_to_stream(self, event: SyncEvent) -> Optional[str]:
        try:
            redis = await self._get_redis()
            message_id = await redis.xadd(
                name=self.stream_name,
                fields={
                    "event_type": event.event_type,
                    "source": event.source,
                    "timestamp": event.timestamp.isoformat(),
                    "data": json.dumps(event.data, default=str)
                },
                maxlen=self.stream_maxlen,
                approximate=True
            )
            logger.info(f"[SYNC_EVENTS] Published {event.event_type} to stream {self.stream_name} (message_id: {message_id})")
            return message_id
        except (RedisError, OSError) as e:
            logger.error(f"[SYNC_EVENTS] Error publishing {event.event_type} to Redis: {e}")
            return None

    async def recent_events(self, count: int = 20) -> List[Dict[str, Any]]:
        """Newest-first events from the stream, empty when Redis is off or down"""
        if not self.redis_enabled:
            return []
        try:
            redis = await self._get_redis()
            messages = await redis.xrevrange(self.stream_name, count=count)
        except (RedisError, OSError) as e:
            logger.error(f"[SYNC_EVENTS] Error reading stream {self.stream_name}: {e}")
            return []

        events = []
        for message_id, fields in messages:
            try:
                data = json.loads(fields.get("data") or "{}")
            except json.JSONDecodeError:
                data = {}
            events.append({
                "id": message_id,
                "event_type": fields.get("event_type"),
                "source": fields.get("source"),
                "timestamp": fields.get("timestamp"),
                "data": data
            })
        return events

    async def close(self) -> None:
        if self.redis_client is not None:
            try:
                await self.redis_client.aclose()
            except (RedisError, OSError) as e:
                logger.warning(f"[SYNC_EVENTS] Error closing Redis connection: {e}")
            self.redis_client = None
