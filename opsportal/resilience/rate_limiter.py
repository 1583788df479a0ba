"""
Adaptive rate limiter for outbound Bitrix24 calls
Spaces requests by a delay that shrinks on success streaks and grows on errors
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Minimum spacing between requests to a single rate-limited API.

    The limiter gets no automatic feedback: after every request gated by
    wait_for_next_request() the caller reports exactly one of on_success(),
    on_rate_limit() or on_error().
    """

    def __init__(
        self,
        base_delay_ms: float = 1000,
        min_delay_ms: float = 500,
        max_delay_ms: float = 30000,
        success_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self.success_threshold = success_threshold
        self.current_delay_ms = float(min(max_delay_ms, max(min_delay_ms, base_delay_ms)))
        self.consecutive_successes = 0
        self.consecutive_failures = 0
        self.last_request_at: Optional[float] = None
        self._clock = clock
        self._sleep = sleep

    async def wait_for_next_request(self) -> None:
        """Suspend the caller until current_delay_ms has passed since the last request"""
        if self.last_request_at is not None:
            elapsed_ms = (self._clock() - self.last_request_at) * 1000
            if elapsed_ms < self.current_delay_ms:
                wait_ms = self.current_delay_ms - elapsed_ms
                logger.debug(f"[RATE_LIMITER] Waiting {wait_ms:.0f}ms before next request")
                await self._sleep(wait_ms / 1000)
        self.last_request_at = self._clock()

    def on_success(self) -> None:
        self.consecutive_successes += 1
        self.consecutive_failures = 0
        if self.consecutive_successes >= self.success_threshold:
            self.current_delay_ms = max(self.min_delay_ms, self.current_delay_ms * 0.8)
            logger.debug(
                f"[RATE_LIMITER] Reducing delay to {self.current_delay_ms:.0f}ms "
                f"(success streak: {self.consecutive_successes})"
            )

    def on_rate_limit(self) -> None:
        """Upstream explicitly rejected the request as rate limited"""
        self.consecutive_failures += 1
        self.consecutive_successes = 0
        self.current_delay_ms = min(self.max_delay_ms, self.current_delay_ms * 2)
        logger.warning(
            f"[RATE_LIMITER] Rate limited, increasing delay to {self.current_delay_ms:.0f}ms "
            f"(failure streak: {self.consecutive_failures})"
        )

    def on_error(self) -> None:
        """Generic failure, backs off less aggressively than on_rate_limit"""
        self.consecutive_failures += 1
        self.consecutive_successes = 0
        self.current_delay_ms = min(self.max_delay_ms, self.current_delay_ms * 1.5)
        logger.warning(f"[RATE_LIMITER] Error, moderate delay increase to {self.current_delay_ms:.0f}ms")

    def get_current_delay(self) -> float:
        return self.current_delay_ms

    def get_stats(self) -> Dict[str, float]:
        return {
            "delay": self.current_delay_ms,
            "successes": self.consecutive_successes,
            "failures": self.consecutive_failures
        }
