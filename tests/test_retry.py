"""Tests for the retry controller and single-flight coalescing."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from genai_gateway.gateway.errors import ConfigurationError, ProviderRequestError, RetriesExhausted
from genai_gateway.gateway.retry import RetryController, retry_policy_from_settings
from genai_gateway.gateway.single_flight import SingleFlight
from genai_gateway.gateway.types import ErrorKind, RetryPolicy


def _server_error():
    return ProviderRequestError("503", kind=ErrorKind.SERVER_ERROR, status_code=503)


class TestBackoff:
    def test_exponential_delays(self):
        controller = RetryController(RetryPolicy(initial_delay_ms=1000, multiplier=2))
        assert [controller.delay_ms(n) for n in (1, 2, 3)] == [1000, 2000, 4000]

    def test_cap(self):
        controller = RetryController(RetryPolicy(initial_delay_ms=1000, multiplier=10, max_delay_ms=5000))
        assert controller.delay_ms(3) == 5000

    def test_jitter_within_fraction(self):
        controller = RetryController(RetryPolicy(initial_delay_ms=1000, multiplier=2, jitter=0.5), rng=lambda: 1.0)
        assert controller.delay_ms(1) == 1500
        controller = RetryController(RetryPolicy(initial_delay_ms=1000, multiplier=2, jitter=0.5), rng=lambda: 0.0)
        assert controller.delay_ms(1) == 1000

    def test_policy_from_settings(self, test_settings):
        cfg = test_settings.model_copy(update={"retry_on": ["timeout"], "retry_max_delay_ms": 9000})
        policy = retry_policy_from_settings(cfg)
        assert policy.max_attempts == 3
        assert policy.retryable_kinds == frozenset({ErrorKind.TIMEOUT})
        assert policy.max_delay_ms == 9000


class TestRun:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        sleep = AsyncMock()
        controller = RetryController(RetryPolicy(), sleep=sleep)
        outcome = await controller.run(AsyncMock(return_value="ok"))
        assert outcome.value == "ok"
        assert outcome.attempts == 1
        assert outcome.total_delay_ms == 0
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=[_server_error(), _server_error(), "ok"])
        controller = RetryController(RetryPolicy(max_attempts=3, initial_delay_ms=1000, multiplier=2), sleep=sleep)

        outcome = await controller.run(operation, label="openai")

        assert outcome.value == "ok"
        assert outcome.attempts == 3
        assert outcome.total_delay_ms == 3000
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted(self):
        sleep = AsyncMock()
        last = _server_error()
        operation = AsyncMock(side_effect=[_server_error(), _server_error(), last])
        controller = RetryController(RetryPolicy(max_attempts=3), sleep=sleep)

        with pytest.raises(RetriesExhausted) as info:
            await controller.run(operation)

        assert info.value.attempts == 3
        assert info.value.last_error is last
        assert operation.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raised_unchanged(self):
        sleep = AsyncMock()
        error = ProviderRequestError("bad request", kind=ErrorKind.CLIENT_ERROR, status_code=400)
        operation = AsyncMock(side_effect=error)
        controller = RetryController(RetryPolicy(), sleep=sleep)

        with pytest.raises(ProviderRequestError) as info:
            await controller.run(operation)

        assert info.value is error
        assert operation.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_configuration_error_never_retried(self):
        operation = AsyncMock(side_effect=ConfigurationError("no key"))
        with pytest.raises(ConfigurationError):
            await RetryController(RetryPolicy(), sleep=AsyncMock()).run(operation)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_single_attempt_policy(self):
        operation = AsyncMock(side_effect=_server_error())
        with pytest.raises(RetriesExhausted) as info:
            await RetryController(RetryPolicy(max_attempts=1), sleep=AsyncMock()).run(operation)
        assert info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_custom_retryable_kinds(self):
        operation = AsyncMock(side_effect=[ProviderRequestError("bad", kind=ErrorKind.CLIENT_ERROR), "ok"])
        policy = RetryPolicy(retryable_kinds=frozenset({ErrorKind.CLIENT_ERROR}))
        outcome = await RetryController(policy, sleep=AsyncMock()).run(operation)
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_backoff_is_cancellable(self):
        controller = RetryController(RetryPolicy(initial_delay_ms=60_000))
        task = asyncio.create_task(controller.run(AsyncMock(side_effect=_server_error())))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_calls_coalesce(self):
        flight: SingleFlight[str] = SingleFlight()
        calls = 0
        release = asyncio.Event()

        async def work():
            nonlocal calls
            calls += 1
            await release.wait()
            return "result"

        tasks = [asyncio.create_task(flight.do("k", work)) for _ in range(5)]
        await asyncio.sleep(0.01)
        assert flight.in_flight() == 1
        assert flight.waiters("k") == 4
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert [r for r, _ in results] == ["result"] * 5
        assert sorted(shared for _, shared in results) == [False, True, True, True, True]
        assert flight.in_flight() == 0
        assert flight.waiters("k") == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_separately(self):
        flight: SingleFlight[str] = SingleFlight()
        results = await asyncio.gather(
            flight.do("a", AsyncMock(return_value="A")),
            flight.do("b", AsyncMock(return_value="B")),
        )
        assert results == [("A", False), ("B", False)]

    @pytest.mark.asyncio
    async def test_failure_shared_with_waiters(self):
        flight: SingleFlight[str] = SingleFlight()
        release = asyncio.Event()

        async def work():
            await release.wait()
            raise ValueError("boom")

        tasks = [asyncio.create_task(flight.do("k", work)) for _ in range(3)]
        await asyncio.sleep(0.01)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, ValueError) for r in results)

    @pytest.mark.asyncio
    async def test_cancelled_leader_hands_over_to_waiter(self):
        flight: SingleFlight[str] = SingleFlight()
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(10)
            return "result"

        leader = asyncio.create_task(flight.do("k", work))
        await asyncio.sleep(0.01)
        follower = asyncio.create_task(flight.do("k", work))
        await asyncio.sleep(0.01)
        assert flight.waiters("k") == 1

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader

        assert await follower == ("result", False)
        assert calls == 2
        assert flight.in_flight() == 0

    @pytest.mark.asyncio
    async def test_cancelled_leader_hands_over_to_one_waiter_only(self):
        flight: SingleFlight[str] = SingleFlight()
        calls = 0
        release = asyncio.Event()

        async def work():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(10)
            await release.wait()
            return "result"

        leader = asyncio.create_task(flight.do("k", work))
        await asyncio.sleep(0.01)
        followers = [asyncio.create_task(flight.do("k", work)) for _ in range(3)]
        await asyncio.sleep(0.01)

        leader.cancel()
        await asyncio.sleep(0.01)
        release.set()
        results = await asyncio.gather(*followers)

        assert calls == 2
        assert [r for r, _ in results] == ["result"] * 3
        assert sorted(shared for _, shared in results) == [False, True, True]

    @pytest.mark.asyncio
    async def test_sequential_calls_not_coalesced(self):
        flight: SingleFlight[int] = SingleFlight()
        work = AsyncMock(side_effect=[1, 2])
        assert await flight.do("k", work) == (1, False)
        assert await flight.do("k", work) == (2, False)
