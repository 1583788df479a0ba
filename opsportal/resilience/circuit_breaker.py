"""
Circuit breaker for outbound calls
CLOSED -> OPEN after consecutive failures, OPEN -> HALF_OPEN after a cooldown,
HALF_OPEN -> CLOSED on a successful probe or back to OPEN on a failed one
"""
import asyncio
import enum
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from opsportal.core.exceptions import CircuitOpenError
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Three-state failure gate wrapping an async operation.

    The breaker never swallows the operation's exception; it only decides
    whether the operation is attempted at all.
    """

    def __init__(
        self,
        name: str = "bitrix24",
        failure_threshold: int = 3,
        timeout_seconds: float = 5 * 60,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at: Optional[float] = None
        self._clock = clock

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                logger.info(f"[CIRCUIT_BREAKER] {self.name}: attempting reset (HALF_OPEN)")
            else:
                raise CircuitOpenError(
                    details={"circuit": self.name, "failure_count": self.failure_count}
                )

        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self) -> None:
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.CLOSED
            logger.info(f"[CIRCUIT_BREAKER] {self.name}: reset successful (CLOSED)")

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_at = self._clock()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(
                    f"[CIRCUIT_BREAKER] {self.name}: opened after {self.failure_count} consecutive failures"
                )
            self.state = CircuitState.OPEN

    def _should_attempt_reset(self) -> bool:
        return (
            self.last_failure_at is not None
            and (self._clock() - self.last_failure_at) >= self.timeout_seconds
        )

    def get_state(self) -> CircuitState:
        return self.state

    def get_failure_count(self) -> int:
        return self.failure_count

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "seconds_since_last_failure": (
                round(self._clock() - self.last_failure_at, 3)
                if self.last_failure_at is not None else None
            )
        }
