"""Tests for backoff and the poll scheduler."""

import asyncio

import pytest

from ctxmon.scheduler import MAX_BACKOFF_SECONDS, BackoffPolicy, PollScheduler


async def _settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestBackoffPolicy:

    def test_doubles_per_failure_up_to_cap(self):
        policy = BackoffPolicy(base_interval=5)
        delays = [policy.record_failure() for _ in range(6)]
        assert delays == [5, 10, 20, 40, 60, 60]

    def test_cap_never_below_base(self):
        policy = BackoffPolicy(base_interval=90)
        assert policy.max_interval == 90
        assert policy.record_failure() == 90
        assert policy.record_failure() == 90

    def test_success_resets(self):
        policy = BackoffPolicy(base_interval=5)
        policy.record_failure()
        policy.record_failure()
        assert policy.record_success() == 5
        assert policy.consecutive_failures == 0
        assert policy.current_interval == 5

    def test_base_floored_at_one_second(self):
        assert BackoffPolicy(base_interval=0).base_interval == 1.0
        policy = BackoffPolicy()
        policy.reset(-4)
        assert policy.base_interval == 1.0

    def test_default_cap(self):
        assert BackoffPolicy(base_interval=1).max_interval == MAX_BACKOFF_SECONDS


class TestPollScheduler:

    @pytest.mark.asyncio
    async def test_start_runs_immediately(self):
        calls = 0

        async def cycle():
            nonlocal calls
            calls += 1
            return True

        scheduler = PollScheduler(cycle, BackoffPolicy(base_interval=60))
        scheduler.start()
        await _settle()
        assert calls == 1
        assert not scheduler.in_flight
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_overlapping_requests_deferred_to_one_rerun(self):
        release = asyncio.Event()
        calls = 0

        async def cycle():
            nonlocal calls
            calls += 1
            if calls == 1:
                await release.wait()
            return True

        scheduler = PollScheduler(cycle, BackoffPolicy(base_interval=60))
        scheduler.start()
        await asyncio.sleep(0)
        assert scheduler.in_flight

        scheduler.run_now()
        scheduler.run_now()
        assert calls == 1

        release.set()
        await _settle()
        assert calls == 2
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_superseded_cycle_does_not_rearm(self):
        release = asyncio.Event()

        async def cycle():
            await release.wait()
            return True

        scheduler = PollScheduler(cycle, BackoffPolicy(base_interval=60))
        scheduler.start()
        await asyncio.sleep(0)

        generation = scheduler.schedule(30)
        release.set()
        await _settle()
        assert scheduler.generation == generation
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_exception_counts_as_failure(self):
        async def cycle():
            raise RuntimeError("poll blew up")

        scheduler = PollScheduler(cycle, BackoffPolicy(base_interval=5))
        scheduler.start()
        await _settle()
        assert scheduler.policy.consecutive_failures == 1
        assert not scheduler.in_flight
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_false_counts_as_failure_and_success_resets(self):
        results = [False, False, True]

        async def cycle():
            return results.pop(0)

        scheduler = PollScheduler(cycle, BackoffPolicy(base_interval=5))
        scheduler.start()
        await _settle()
        assert scheduler.policy.consecutive_failures == 1
        scheduler.run_now()
        await _settle()
        assert scheduler.policy.consecutive_failures == 2
        scheduler.run_now()
        await _settle()
        assert scheduler.policy.consecutive_failures == 0
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_cycle(self):
        started = asyncio.Event()

        async def cycle():
            started.set()
            await asyncio.sleep(3600)
            return True

        scheduler = PollScheduler(cycle, BackoffPolicy(base_interval=5))
        scheduler.start()
        await started.wait()
        await scheduler.stop()
        assert not scheduler.in_flight

    @pytest.mark.asyncio
    async def test_set_base_interval_resets_backoff(self):
        async def cycle():
            return False

        scheduler = PollScheduler(cycle, BackoffPolicy(base_interval=5))
        scheduler.start()
        await _settle()
        before = scheduler.generation
        scheduler.set_base_interval(10)
        assert scheduler.policy.consecutive_failures == 0
        assert scheduler.policy.base_interval == 10
        assert scheduler.generation == before + 1
        await scheduler.stop()
