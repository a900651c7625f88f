"""
Unit tests for the retry policy, the attempt combinator and the reconnect controller.
"""

import asyncio

import pytest
from voicerag.errors import DeviceError, RetryExhaustedError, TransportError
from voicerag.orchestration.retry import ReconnectController, RetryPolicy, attempt_with_policy
from voicerag.state_machine import SessionRecord


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestRetryPolicy:
    """Test backoff arithmetic."""

    def test_exponential_delays(self):
        policy = RetryPolicy(max_attempts=5, base_delay_ms=2000)
        assert [policy.delay_ms(n) for n in range(1, 6)] == [2000, 4000, 8000, 16000, 32000]

    def test_delays_are_monotonic(self):
        policy = RetryPolicy(max_attempts=8, base_delay_ms=100)
        delays = [policy.delay_ms(n) for n in range(1, 9)]
        assert delays == sorted(delays)

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryPolicy().delay_ms(0)

    def test_jitter_stays_within_ten_percent(self):
        policy = RetryPolicy(base_delay_ms=1000, jitter=True)
        for _ in range(20):
            assert 1000 <= policy.delay_ms(1) <= 1100

    def test_allows(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.allows(1)
        assert policy.allows(3)
        assert not policy.allows(4)
        assert not policy.allows(0)


class TestAttemptWithPolicy:
    """Test the generic attempt combinator."""

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        sleep = FakeSleep()
        attempts = []

        async def operation(attempt):
            attempts.append(attempt)
            if attempt < 3:
                raise TransportError("down")
            return "ok"

        result = await attempt_with_policy(operation, RetryPolicy(max_attempts=5), sleep=sleep)
        assert result == "ok"
        assert attempts == [1, 2, 3]
        assert sleep.delays == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_no_attempt_beyond_ceiling(self):
        sleep = FakeSleep()
        attempts = []

        async def operation(attempt):
            attempts.append(attempt)
            raise TransportError("down")

        with pytest.raises(RetryExhaustedError):
            await attempt_with_policy(operation, RetryPolicy(max_attempts=3), sleep=sleep)
        assert attempts == [1, 2, 3]
        assert len(sleep.delays) == 3

    @pytest.mark.asyncio
    async def test_recovered_session_skips_attempt(self):
        """A retry racing a self-healed connection becomes a no-op."""
        called = False

        async def operation(attempt):
            nonlocal called
            called = True

        result = await attempt_with_policy(
            operation, RetryPolicy(), is_recovered=lambda: True, sleep=FakeSleep()
        )
        assert result is None
        assert not called

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates(self):
        attempts = []

        async def operation(attempt):
            attempts.append(attempt)
            raise DeviceError("no mic")

        with pytest.raises(DeviceError):
            await attempt_with_policy(
                operation,
                RetryPolicy(),
                is_retryable=lambda e: not isinstance(e, DeviceError),
                sleep=FakeSleep(),
            )
        assert attempts == [1]

    @pytest.mark.asyncio
    async def test_first_attempt_past_ceiling_exhausts_immediately(self):
        async def operation(attempt):
            raise AssertionError("must not run")

        with pytest.raises(RetryExhaustedError):
            await attempt_with_policy(
                operation, RetryPolicy(max_attempts=2), first_attempt=3, sleep=FakeSleep()
            )


class TestReconnectController:
    """Test scheduling, recovery and exhaustion."""

    @pytest.mark.asyncio
    async def test_three_failures_then_success_resets_counter(self):
        """Retries at 2000, 4000, 8000ms; the successful attempt resets the counter."""
        record = SessionRecord()
        outcomes = iter([TransportError("1"), TransportError("2"), None])
        exhausted = []

        async def reconnect(attempt):
            outcome = next(outcomes)
            if outcome is not None:
                raise outcome
            controller.reset()

        async def on_exhausted(exc):
            exhausted.append(exc)

        controller = ReconnectController(
            record,
            reconnect=reconnect,
            is_healthy=lambda: False,
            on_exhausted=on_exhausted,
            policy=RetryPolicy(max_attempts=5, base_delay_ms=2000),
            sleep=FakeSleep(),
        )

        assert controller.schedule("initial connect failed")
        await controller._task

        assert controller.scheduled_delays == [2000, 4000, 8000]
        assert record.retry_count == 0
        assert exhausted == []

    @pytest.mark.asyncio
    async def test_exhaustion_reported_once(self):
        record = SessionRecord()
        exhausted = []

        async def reconnect(attempt):
            raise TransportError("still down")

        async def on_exhausted(exc):
            exhausted.append(exc)

        controller = ReconnectController(
            record,
            reconnect=reconnect,
            is_healthy=lambda: False,
            on_exhausted=on_exhausted,
            policy=RetryPolicy(max_attempts=3, base_delay_ms=10),
            sleep=FakeSleep(),
        )
        controller.schedule("lost")
        await controller._task

        assert len(exhausted) == 1
        assert isinstance(exhausted[0], RetryExhaustedError)
        assert record.retry_count == 3

    @pytest.mark.asyncio
    async def test_single_pending_run(self):
        record = SessionRecord()
        gate = asyncio.Event()

        async def blocking_sleep(seconds):
            await gate.wait()

        async def reconnect(attempt):
            pass

        async def on_exhausted(exc):
            pass

        controller = ReconnectController(
            record, reconnect, lambda: False, on_exhausted, sleep=blocking_sleep
        )
        assert controller.schedule("first")
        assert not controller.schedule("second")
        gate.set()
        await controller._task
        assert not controller.pending

    @pytest.mark.asyncio
    async def test_disabled_controller_never_schedules(self):
        async def noop(*args):
            pass

        controller = ReconnectController(SessionRecord(), noop, lambda: False, noop, enabled=False)
        assert not controller.schedule("lost")
        assert not controller.pending

    @pytest.mark.asyncio
    async def test_on_recovered_cancels_waiting_run(self):
        record = SessionRecord(retry_count=2)
        gate = asyncio.Event()
        reconnects = []

        async def blocking_sleep(seconds):
            await gate.wait()

        async def reconnect(attempt):
            reconnects.append(attempt)

        async def on_exhausted(exc):
            pass

        controller = ReconnectController(
            record, reconnect, lambda: False, on_exhausted, sleep=blocking_sleep
        )
        controller.schedule("lost")
        await asyncio.sleep(0)

        controller.on_recovered()
        with pytest.raises(asyncio.CancelledError):
            await controller._task

        assert reconnects == []
        assert record.retry_count == 0

    @pytest.mark.asyncio
    async def test_device_error_is_fatal(self):
        exhausted = []

        async def reconnect(attempt):
            raise DeviceError("Microphone error: gone")

        async def on_exhausted(exc):
            exhausted.append(exc)

        controller = ReconnectController(
            SessionRecord(),
            reconnect,
            lambda: False,
            on_exhausted,
            is_retryable=lambda e: not isinstance(e, DeviceError),
            sleep=FakeSleep(),
        )
        controller.schedule("lost")
        await controller._task
        assert len(exhausted) == 1
        assert isinstance(exhausted[0], DeviceError)
