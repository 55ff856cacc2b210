"""
Unit tests for the circuit breaker and its registry.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from dynafusion.shared.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitBreakerState,
)
from dynafusion.shared.errors import ServiceUnavailableError, ThrottlingError, ValidationError

from conftest import DummyMetrics, FakeClock


async def _fail(breaker: CircuitBreaker, times: int, error: Exception = None):
    for _ in range(times):
        with pytest.raises(type(error) if error else RuntimeError):
            await breaker.execute(AsyncMock(side_effect=error or RuntimeError("boom")))


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(
            "store:Users",
            CircuitBreakerConfig(failure_threshold=3, open_timeout_seconds=60),
            clock=clock
        )

    @pytest.mark.asyncio
    async def test_success_passes_through(self, breaker):
        primary = AsyncMock(return_value="ok")

        assert await breaker.execute(primary) == "ok"
        assert breaker.state == CircuitBreakerState.CLOSED
        primary.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_opens_at_threshold_and_half_opens_after_timeout(self, breaker, clock):
        """Three failures open the breaker; one trial is let through after the timeout."""
        await _fail(breaker, 3)
        assert breaker.snapshot().state == CircuitBreakerState.OPEN

        clock.advance(61)
        primary = AsyncMock(return_value="recovered")
        assert await breaker.execute(primary) == "recovered"

        primary.assert_awaited_once()
        snapshot = breaker.snapshot()
        assert snapshot.state == CircuitBreakerState.CLOSED
        assert snapshot.failure_count == 0

    @pytest.mark.asyncio
    async def test_rejects_while_open_without_invoking_primary(self, breaker, clock):
        await _fail(breaker, 3)
        clock.advance(10)
        primary = AsyncMock(return_value="never")

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await breaker.execute(primary)

        primary.assert_not_awaited()
        assert exc_info.value.retry_after == pytest.approx(50)
        assert exc_info.value.operation_key == "store:Users"

    @pytest.mark.asyncio
    async def test_rejection_uses_fallback(self, breaker):
        await _fail(breaker, 3)
        fallback = AsyncMock(return_value="cached")

        assert await breaker.execute(AsyncMock(), fallback) == "cached"
        fallback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self, breaker, clock):
        await _fail(breaker, 3)
        clock.advance(61)

        await _fail(breaker, 1)

        snapshot = breaker.snapshot()
        assert snapshot.state == CircuitBreakerState.OPEN
        assert snapshot.next_attempt_time == pytest.approx(clock.now + 60)

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial(self, breaker, clock):
        await _fail(breaker, 3)
        clock.advance(61)
        gate = asyncio.Event()

        async def slow_trial():
            await gate.wait()
            return "trial"

        trial = asyncio.create_task(breaker.execute(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == CircuitBreakerState.HALF_OPEN

        concurrent = AsyncMock(return_value="second")
        with pytest.raises(ServiceUnavailableError):
            await breaker.execute(concurrent)
        concurrent.assert_not_awaited()

        gate.set()
        assert await trial == "trial"
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_slot(self, breaker, clock):
        await _fail(breaker, 3)
        clock.advance(61)

        trial = asyncio.create_task(breaker.execute(lambda: asyncio.sleep(10)))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert await breaker.execute(AsyncMock(return_value="next")) == "next"

    @pytest.mark.asyncio
    async def test_late_success_from_closed_call_does_not_end_trial(self, breaker, clock):
        straggler_gate = asyncio.Event()
        trial_gate = asyncio.Event()

        async def straggler_call():
            await straggler_gate.wait()
            return "late"

        async def trial_call():
            await trial_gate.wait()
            return "trial"

        straggler = asyncio.create_task(breaker.execute(straggler_call))
        await asyncio.sleep(0)
        await _fail(breaker, 3)
        clock.advance(61)
        trial = asyncio.create_task(breaker.execute(trial_call))
        await asyncio.sleep(0)

        straggler_gate.set()
        assert await straggler == "late"
        assert breaker.state == CircuitBreakerState.HALF_OPEN
        with pytest.raises(ServiceUnavailableError):
            await breaker.execute(AsyncMock(return_value="extra"))

        trial_gate.set()
        assert await trial == "trial"
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_late_failure_from_closed_call_does_not_reopen(self, breaker, clock):
        straggler_gate = asyncio.Event()
        trial_gate = asyncio.Event()

        async def straggler_call():
            await straggler_gate.wait()
            raise RuntimeError("late boom")

        async def trial_call():
            await trial_gate.wait()
            return "trial"

        straggler = asyncio.create_task(breaker.execute(straggler_call))
        await asyncio.sleep(0)
        await _fail(breaker, 3)
        clock.advance(61)
        trial = asyncio.create_task(breaker.execute(trial_call))
        await asyncio.sleep(0)

        straggler_gate.set()
        with pytest.raises(RuntimeError):
            await straggler
        assert breaker.state == CircuitBreakerState.HALF_OPEN

        trial_gate.set()
        assert await trial == "trial"
        snapshot = breaker.snapshot()
        assert snapshot.state == CircuitBreakerState.CLOSED
        assert snapshot.failure_count == 0

    @pytest.mark.asyncio
    async def test_success_decrements_failure_count(self, breaker):
        await _fail(breaker, 2)
        await breaker.execute(AsyncMock(return_value=1))

        assert breaker.snapshot().failure_count == 1
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_failure_while_closed_propagates_even_with_fallback(self, breaker):
        fallback = AsyncMock(return_value="fallback")

        with pytest.raises(ThrottlingError):
            await breaker.execute(AsyncMock(side_effect=ThrottlingError()), fallback)
        fallback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_that_opens_uses_fallback(self, breaker):
        await _fail(breaker, 2)
        fallback = AsyncMock(return_value="fallback")

        result = await breaker.execute(AsyncMock(side_effect=RuntimeError("third")), fallback)

        assert result == "fallback"
        assert breaker.is_open()

    @pytest.mark.asyncio
    async def test_fallback_failure_raises_service_unavailable(self, breaker):
        await _fail(breaker, 2)

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await breaker.execute(
                AsyncMock(side_effect=RuntimeError("primary")),
                AsyncMock(side_effect=RuntimeError("fallback"))
            )
        assert "fallback" in str(exc_info.value.__cause__)

    @pytest.mark.asyncio
    async def test_ignored_exceptions_do_not_count(self, clock):
        breaker = CircuitBreaker(
            "store:Users",
            CircuitBreakerConfig(failure_threshold=1, ignored_exceptions=(ValidationError,)),
            clock=clock
        )

        with pytest.raises(ValidationError):
            await breaker.execute(AsyncMock(side_effect=ValidationError("bad request")))

        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.snapshot().failure_count == 0

    @pytest.mark.asyncio
    async def test_reset_closes(self, breaker):
        await _fail(breaker, 3)
        breaker.reset()

        snapshot = breaker.snapshot()
        assert snapshot.state == CircuitBreakerState.CLOSED
        assert snapshot.last_failure_time is None
        assert breaker.retry_after() == 0.0

    @pytest.mark.asyncio
    async def test_state_changes_are_published(self, clock):
        metrics = DummyMetrics()
        breaker = CircuitBreaker("q", CircuitBreakerConfig(failure_threshold=1), metrics=metrics, clock=clock)

        await _fail(breaker, 1)
        with pytest.raises(ServiceUnavailableError):
            await breaker.execute(AsyncMock())

        assert ("record_circuit_state", ("q", "open")) in metrics.calls
        assert "record_circuit_rejection" in metrics.names()

    def test_presets(self):
        assert CircuitBreakerConfig.default().failure_threshold == 5
        assert CircuitBreakerConfig.conservative().open_timeout_seconds == 300
        assert CircuitBreakerConfig.aggressive().failure_threshold == 10


class TestCircuitBreakerManager:
    """Test cases for CircuitBreakerManager."""

    @pytest.fixture
    def manager(self):
        return CircuitBreakerManager(CircuitBreakerConfig(failure_threshold=2), clock=FakeClock())

    def test_breakers_are_created_once_per_key(self, manager):
        first = manager.get_circuit_breaker("store:Users")
        assert manager.get_circuit_breaker("store:Users") is first
        assert manager.get_circuit_breaker("store:Orders") is not first

    def test_unknown_key_reports_closed(self, manager):
        snapshot = manager.get_state("never-used")

        assert snapshot.state == CircuitBreakerState.CLOSED
        assert snapshot.failure_count == 0
        assert manager.get_all_states() == {}

    @pytest.mark.asyncio
    async def test_keys_fail_independently(self, manager):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await manager.execute("store:Users", AsyncMock(side_effect=RuntimeError()))

        assert manager.get_state("store:Users").state == CircuitBreakerState.OPEN
        assert await manager.execute("store:Orders", AsyncMock(return_value="ok")) == "ok"
        assert set(manager.get_all_states()) == {"store:Users", "store:Orders"}

    @pytest.mark.asyncio
    async def test_reset(self, manager):
        with pytest.raises(RuntimeError):
            await manager.execute("k", AsyncMock(side_effect=RuntimeError()))

        assert manager.reset("k") is True
        assert manager.reset("missing") is False
        assert manager.get_state("k").failure_count == 0

    def test_config_applies_on_creation_only(self, manager):
        breaker = manager.get_circuit_breaker("k", CircuitBreakerConfig(failure_threshold=9))
        again = manager.get_circuit_breaker("k", CircuitBreakerConfig(failure_threshold=1))

        assert again is breaker
        assert breaker.config.failure_threshold == 9
