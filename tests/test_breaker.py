"""Backoff schedule and the shared rate-limit gate."""

from __future__ import annotations

import asyncio

import pytest

from mg.bootstrap.breaker import BACKOFF_SCHEDULE, PipelineAbortedError, RateLimitBreaker, compute_backoff


def test_backoff_schedule():
    values = [compute_backoff(n) for n in range(1, 6)]
    assert values == [15.0, 30.0, 60.0, 120.0, 300.0]
    assert values == sorted(values)
    assert all(v in BACKOFF_SCHEDULE for v in values)
    assert compute_backoff(5) == compute_backoff(6) == compute_backoff(50) == 300.0
    assert compute_backoff(0) == 15.0


def test_gate_blocks_during_backoff_then_reopens():
    async def scenario():
        breaker = RateLimitBreaker(backoff=lambda n: 0.05)
        assert breaker.start_backoff() is True
        assert breaker.backoff_pending
        waiter = asyncio.create_task(breaker.await_gate())
        await asyncio.sleep(0.01)
        assert not waiter.done()
        await asyncio.wait_for(waiter, 1.0)
        assert not breaker.backoff_pending

    asyncio.run(scenario())


def test_only_first_failure_in_window_starts_timer():
    delays: list[int] = []

    async def scenario():
        breaker = RateLimitBreaker(backoff=lambda n: delays.append(n) or 0.01)
        breaker.start_backoff()
        breaker.start_backoff()
        assert breaker.consecutive_failures == 2
        await breaker.await_gate()
        breaker.close()

    asyncio.run(scenario())
    assert delays == [1]


def test_threshold_aborts_and_wakes_waiters():
    async def scenario():
        breaker = RateLimitBreaker(backoff=lambda n: 60.0, threshold=3)
        assert breaker.start_backoff()
        waiter = asyncio.create_task(breaker.await_gate())
        await asyncio.sleep(0)
        assert breaker.start_backoff()
        assert breaker.start_backoff() is False
        assert breaker.aborted
        with pytest.raises(PipelineAbortedError):
            await asyncio.wait_for(waiter, 1.0)
        with pytest.raises(PipelineAbortedError):
            await breaker.await_gate()

    asyncio.run(scenario())


def test_success_resets_consecutive_count():
    async def scenario():
        breaker = RateLimitBreaker(backoff=lambda n: 0.0, threshold=2)
        breaker.start_backoff()
        await breaker.await_gate()
        breaker.on_success()
        assert breaker.start_backoff() is True
        breaker.close()

    asyncio.run(scenario())
