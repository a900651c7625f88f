"""
Retry policy and reconnect controller for realtime sessions.

delay(attempt) = base × 2^(attempt-1), no attempt past max_attempts.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from voicerag.config import settings
from voicerag.errors import RetryExhaustedError
from voicerag.state_machine import SessionRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a hard attempt ceiling."""
    max_attempts: int = 5
    base_delay_ms: int = 2000
    jitter: bool = False

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            jitter=settings.retry_jitter,
        )

    def delay_ms(self, attempt: int) -> float:
        """Backoff before the given 1-based attempt."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        delay = self.base_delay_ms * 2 ** (attempt - 1)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    def allows(self, attempt: int) -> bool:
        return 1 <= attempt <= self.max_attempts


async def attempt_with_policy(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    first_attempt: int = 1,
    is_recovered: Optional[Callable[[], bool]] = None,
    is_retryable: Callable[[BaseException], bool] = lambda exc: True,
    on_attempt: Optional[Callable[[int, float], None]] = None,
    sleep: Sleep = asyncio.sleep,
) -> Optional[T]:
    """
    Run operation until it succeeds or the policy is exhausted.

    Each attempt waits its backoff delay first, then re-checks is_recovered
    so a retry racing a self-healed session becomes a no-op.

    Args:
        operation: Coroutine factory receiving the attempt number
        policy: Backoff policy
        first_attempt: Attempt number to start from (continues an earlier run)
        is_recovered: Returns True when no retry is needed any more
        is_retryable: Errors for which this returns False propagate immediately
        on_attempt: Called with (attempt, delay_ms) before sleeping
        sleep: Awaitable sleep, injectable for tests

    Returns:
        Result of the successful attempt, or None if recovered beforehand

    Raises:
        RetryExhaustedError: If every allowed attempt failed
    """
    last_error: Optional[BaseException] = None

    for attempt in range(first_attempt, policy.max_attempts + 1):
        delay_ms = policy.delay_ms(attempt)
        if on_attempt is not None:
            on_attempt(attempt, delay_ms)

        await sleep(delay_ms / 1000)

        if is_recovered is not None and is_recovered():
            logger.info(f"✅ Recovered before retry attempt {attempt}, skipping")
            return None

        try:
            return await operation(attempt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            logger.warning(f"Retry attempt {attempt}/{policy.max_attempts} failed: {e}")

    raise RetryExhaustedError() from last_error


class ReconnectController:
    """
    Schedules at most one reconnect run at a time for a session.

    The attempt counter lives on the SessionRecord so it survives across
    runs and is reset only when the session is fully connected again.
    """

    def __init__(
        self,
        record: SessionRecord,
        reconnect: Callable[[int], Awaitable[None]],
        is_healthy: Callable[[], bool],
        on_exhausted: Callable[[BaseException], Awaitable[None]],
        policy: Optional[RetryPolicy] = None,
        is_retryable: Callable[[BaseException], bool] = lambda exc: True,
        enabled: bool = True,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Args:
            record: Session record holding retry_count
            reconnect: Performs one full reconnect, raising on failure
            is_healthy: True when transport and media are both connected
            on_exhausted: Called once when the ceiling is hit or a fatal error occurs
            policy: Backoff policy (settings-derived by default)
            is_retryable: Classifies reconnect errors
            enabled: False disables automatic reconnects entirely
            sleep: Awaitable sleep, injectable for tests
        """
        self.record = record
        self.policy = policy or RetryPolicy.from_settings()
        self.enabled = enabled
        self._reconnect = reconnect
        self._is_healthy = is_healthy
        self._on_exhausted = on_exhausted
        self._is_retryable = is_retryable
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._in_attempt = False
        self.scheduled_delays: list[float] = []

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, reason: str = "") -> bool:
        """
        Start a reconnect run unless one is already pending.

        Returns:
            True if a new run was started
        """
        if not self.enabled:
            logger.info(f"Auto-reconnect disabled, not retrying ({reason})")
            return False
        if self.pending:
            logger.debug(f"Reconnect already pending, ignoring trigger ({reason})")
            return False

        logger.warning(f"🔄 Scheduling reconnect (reason: {reason or 'unknown'})")
        self._task = asyncio.create_task(self._run())
        return True

    def on_recovered(self) -> None:
        """Connection healed on its own: drop a waiting retry and reset backoff."""
        if self.pending and not self._in_attempt:
            logger.info("✅ Connection recovered, cancelling scheduled reconnect")
            self._task.cancel()
        self.reset()

    def reset(self) -> None:
        if self.record.retry_count:
            logger.info(f"Retry counter reset (was {self.record.retry_count})")
        self.record.retry_count = 0

    async def cancel(self) -> None:
        """Stop any pending run and wait for it to unwind."""
        task = self._task
        self._task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        try:
            await attempt_with_policy(
                self._attempt,
                self.policy,
                first_attempt=self.record.retry_count + 1,
                is_recovered=self._is_healthy,
                is_retryable=self._is_retryable,
                on_attempt=self._log_attempt,
                sleep=self._sleep,
            )
        except asyncio.CancelledError:
            logger.debug("Reconnect run cancelled")
            raise
        except Exception as e:
            if isinstance(e, RetryExhaustedError):
                logger.error(f"❌ Reconnect gave up after {self.policy.max_attempts} attempts")
            else:
                logger.error(f"❌ Reconnect aborted by non-retryable error: {e}")
            await self._on_exhausted(e)

    async def _attempt(self, attempt: int) -> None:
        self.record.retry_count = attempt
        self._in_attempt = True
        try:
            await self._reconnect(attempt)
        finally:
            self._in_attempt = False

    def _log_attempt(self, attempt: int, delay_ms: float) -> None:
        self.scheduled_delays.append(delay_ms)
        logger.info(
            f"⏳ Reconnect attempt {attempt}/{self.policy.max_attempts} in {delay_ms:.0f}ms"
        )
