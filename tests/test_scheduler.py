import pytest

from chunker import Chunk
from conftest import FakeProvider, hard_failure, rate_limited
from scheduler import (
    EMPTY,
    BatchFailureThresholdExceeded,
    BatchPlan,
    BatchScheduler,
    ProgressUpdate,
)
from tts_client import SynthesisClient


def _chunks(n):
    return [Chunk(index=i, text=f"chunk {i}") for i in range(n)]


def _scheduler(provider, sleep, plan=None, observer=None, clock=lambda: 0.0):
    return BatchScheduler(SynthesisClient(provider), plan or BatchPlan(), observer=observer,
                          sleep=sleep, clock=clock)


class TestBatchPlan:
    def test_defaults(self):
        plan = BatchPlan()
        assert plan.batch_size == 10
        assert plan.stagger_secs == pytest.approx(0.66)
        assert plan.initial_retry_delay == 1.0
        assert plan.failure_ratio_ceiling == 0.10

    def test_batch_size_is_capped_by_quota(self):
        assert BatchPlan(max_concurrent=20, max_requests_per_minute=5).batch_size == 5

    def test_backoff_doubles(self):
        plan = BatchPlan(initial_retry_delay=0.5)
        assert [plan.backoff_secs(a) for a in range(4)] == [0.5, 1.0, 2.0, 4.0]

    @pytest.mark.parametrize("kwargs", [
        {"max_concurrent": 0},
        {"max_requests_per_minute": 0},
        {"max_retries": -1},
        {"failure_ratio_ceiling": 1.5},
    ])
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            BatchPlan(**kwargs)


@pytest.mark.asyncio
async def test_results_follow_chunk_order_without_cooldown(provider, sleep):
    plan = BatchPlan(max_concurrent=10, max_requests_per_minute=100)
    result = await _scheduler(provider, sleep, plan).run(_chunks(25))

    assert result.results == [f"<chunk {i}>".encode() for i in range(25)]
    assert result.failed_count == 0
    assert len(provider.calls) == 25
    assert 60.0 not in sleep.delays


@pytest.mark.asyncio
async def test_in_flight_calls_never_exceed_max_concurrent(provider, sleep):
    plan = BatchPlan(max_concurrent=4, max_requests_per_minute=1000)
    await _scheduler(provider, sleep, plan).run(_chunks(17))

    assert 1 < provider.max_in_flight <= 4


@pytest.mark.asyncio
async def test_batch_slots_are_staggered(provider, sleep):
    plan = BatchPlan(max_concurrent=3, max_requests_per_minute=60)
    await _scheduler(provider, sleep, plan).run(_chunks(3))

    # slot 0 starts immediately, later slots wait one interval (+10%) per slot
    assert sleep.delays == [pytest.approx(1.1), pytest.approx(2.2)]


@pytest.mark.asyncio
async def test_rate_limited_chunk_retries_with_backoff_then_fails(sleep):
    provider = FakeProvider({"chunk 0": rate_limited()})
    plan = BatchPlan(max_concurrent=1, max_requests_per_minute=1000,
                     initial_retry_delay=1.0, max_retries=3)
    chunks = _chunks(20)

    result = await _scheduler(provider, sleep, plan).run(chunks)

    assert provider.calls.count("chunk 0") == 4  # first try + 3 retries
    assert [d for d in sleep.delays if d >= 1.0] == [1.0, 2.0, 4.0]
    assert result.results[0] == EMPTY
    assert result.failed_count == 1
    assert result.results[1:] == [f"<chunk {i}>".encode() for i in range(1, 20)]


@pytest.mark.asyncio
async def test_rate_limited_chunk_recovers(sleep):
    provider = FakeProvider({"chunk 2": [rate_limited(), rate_limited(), None]})
    plan = BatchPlan(max_requests_per_minute=1000, initial_retry_delay=0.25)

    result = await _scheduler(provider, sleep, plan).run(_chunks(5))

    assert result.failed_count == 0
    assert result.results[2] == b"<chunk 2>"
    assert provider.calls.count("chunk 2") == 3
    assert 0.25 in sleep.delays and 0.5 in sleep.delays


@pytest.mark.asyncio
async def test_other_failures_are_not_retried(sleep):
    provider = FakeProvider({"chunk 1": hard_failure()})
    result = await _scheduler(provider, sleep).run(_chunks(10))

    assert provider.calls.count("chunk 1") == 1
    assert result.results[1] == EMPTY
    assert result.failed_count == 1
    assert result.errors == ["Chunk 1: 400 INVALID_ARGUMENT: bad voice"]


@pytest.mark.asyncio
async def test_failures_over_ceiling_abort_the_run(sleep):
    provider = FakeProvider({f"chunk {i}": hard_failure(f"boom {i}") for i in (3, 7, 11)})

    with pytest.raises(BatchFailureThresholdExceeded) as excinfo:
        await _scheduler(provider, sleep).run(_chunks(20))

    err = excinfo.value
    assert err.failed_count == 3
    assert err.total_count == 20
    assert err.samples == ["Chunk 3: boom 3", "Chunk 7: boom 7", "Chunk 11: boom 11"]
    assert "3/20" in str(err)


@pytest.mark.asyncio
async def test_failures_at_ceiling_are_tolerated(sleep):
    provider = FakeProvider({"chunk 0": hard_failure(), "chunk 19": hard_failure()})
    result = await _scheduler(provider, sleep).run(_chunks(20))

    assert result.failed_count == 2
    assert result.results[0] == EMPTY and result.results[19] == EMPTY


@pytest.mark.asyncio
async def test_error_samples_are_bounded(sleep):
    provider = FakeProvider({f"chunk {i}": hard_failure() for i in range(12)})
    with pytest.raises(BatchFailureThresholdExceeded) as excinfo:
        await _scheduler(provider, sleep).run(_chunks(12))
    assert len(excinfo.value.samples) == 5


@pytest.mark.asyncio
async def test_full_window_cooldown_when_batch_uses_whole_quota(provider, sleep, observer):
    plan = BatchPlan(max_concurrent=10, max_requests_per_minute=10)
    result = await _scheduler(provider, sleep, plan, observer).run(_chunks(25))

    assert sleep.delays.count(60.0) == 2  # between batches 1-2 and 2-3, not after the last
    assert len(result.results) == 25
    assert sum("cooldown" in u.message for u in observer.updates) == 2


@pytest.mark.asyncio
async def test_cooldown_waits_out_rest_of_window(provider, sleep):
    ticks = iter(range(0, 1000, 10))
    plan = BatchPlan(max_concurrent=5, max_requests_per_minute=10)

    scheduler = _scheduler(provider, sleep, plan, clock=lambda: float(next(ticks)))
    await scheduler.run(_chunks(15))

    # Two batches of 5 exhaust the window 30s in; only the remainder is waited out
    assert 30.0 in sleep.delays
    assert 60.0 not in sleep.delays


@pytest.mark.asyncio
async def test_progress_reported_at_start_and_after_each_batch(provider, sleep, observer):
    plan = BatchPlan(max_concurrent=10, max_requests_per_minute=100)
    await _scheduler(provider, sleep, plan, observer).run(_chunks(25))

    assert observer.updates[0] == ProgressUpdate(
        processed=0, total=25, failed=0,
        message="Starting synthesis of 25 chunks", estimated_remaining_minutes=1,
    )
    assert [u.processed for u in observer.updates] == [0, 10, 20, 25]
    assert observer.updates[-1].estimated_remaining_minutes == 0
    assert observer.updates[-1].message == "Batch 3/3 complete"


@pytest.mark.asyncio
async def test_no_chunks(provider, sleep):
    result = await _scheduler(provider, sleep).run([])
    assert result.results == []
    assert result.failed_count == 0
    assert provider.calls == []
