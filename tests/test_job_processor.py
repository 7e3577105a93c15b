"""Job processor: lifecycle, batch fairness, no double dispatch, timeouts."""
import asyncio
import threading
from datetime import datetime
import pytest

from advisor.jobs.errors import InvalidTransitionError
from advisor.jobs.models import JobStatus
from advisor.jobs.processor import JobProcessor

FAST = {"poll_interval_seconds": 0.01, "stuck_threshold_seconds": 120, "stuck_batch_size": 2, "regular_batch_size": 3}


def make_processor(store, generator, clock=None, **overrides):
    settings = dict(FAST)
    settings.update(overrides)
    return JobProcessor(store, generator, settings=settings, clock=clock)


async def ok_generator(payload):
    return {"recommendations": [], "profile": payload}


def test_enqueued_job_stays_pending_until_processed(memory_store, clock):
    job_id = memory_store.add_job({"riskTolerance": 5})
    job = memory_store.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.result is None


def test_successful_generation_completes_job(memory_store, clock):
    processor = make_processor(memory_store, ok_generator, clock)
    job_id = memory_store.add_job({"riskTolerance": 5})
    final = asyncio.run(processor.process_job(job_id))
    assert final.status == JobStatus.COMPLETED
    stored = memory_store.get_job(job_id)
    assert stored.result == {"recommendations": [], "profile": {"riskTolerance": 5}}
    assert stored.error is None
    assert processor.completed_count == 1
    assert processor.currently_processing == frozenset()


def test_generator_exception_fails_job_with_message(memory_store, clock):
    async def broken(payload):
        raise RuntimeError("upstream unavailable")

    processor = make_processor(memory_store, broken, clock)
    job_id = memory_store.add_job({})
    asyncio.run(processor.process_job(job_id))
    job = memory_store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "upstream unavailable"
    assert job.result is None
    assert processor.failed_count == 1
    assert not processor.is_processing(job_id)


def test_empty_result_counts_as_failure(memory_store, clock):
    async def nothing(payload):
        return None

    processor = make_processor(memory_store, nothing, clock)
    job_id = memory_store.add_job({})
    asyncio.run(processor.process_job(job_id))
    assert memory_store.get_job(job_id).status == JobStatus.FAILED


def test_unpersistable_result_fails_job_instead_of_leaving_it_processing(file_store, clock):
    async def with_datetime(payload):
        return {"when": datetime(2025, 1, 1)}

    processor = make_processor(file_store, with_datetime, clock)
    job_id = file_store.add_job({})

    async def scenario():
        assert processor.process_job_immediately(job_id)
        await processor.drain()

    asyncio.run(scenario())
    job = file_store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert "not JSON serializable" in job.error
    assert job.result is None
    assert processor.completed_count == 0
    assert not processor.is_processing(job_id)


def test_immediate_dispatch_only_for_pending_jobs(memory_store, clock):
    processor = make_processor(memory_store, ok_generator, clock)
    done = memory_store.add_job({})
    asyncio.run(processor.process_job(done))

    async def scenario():
        assert processor.process_job_immediately("job_0_gonegonegone0") is False
        assert processor.process_job_immediately(done) is False
        await processor.drain()

    asyncio.run(scenario())
    assert processor.processed_count == 1


def test_terminal_jobs_are_not_reprocessed(memory_store, clock):
    calls = []

    async def counting(payload):
        calls.append(payload)
        return {"n": len(calls)}

    processor = make_processor(memory_store, counting, clock)
    job_id = memory_store.add_job({})
    asyncio.run(processor.process_job(job_id))
    assert asyncio.run(processor.process_job(job_id)) is None
    assert len(calls) == 1
    with pytest.raises(InvalidTransitionError):
        memory_store.update_job(job_id, {"status": "pending"})
    assert memory_store.get_job(job_id).result == {"n": 1}


def test_missing_job_is_skipped(memory_store, clock):
    processor = make_processor(memory_store, ok_generator, clock)
    assert asyncio.run(processor.process_job("job_0_gonegonegone0")) is None
    assert processor.processed_count == 0


def test_batch_admits_stuck_jobs_before_fresh(memory_store, clock):
    stuck = []
    for _ in range(4):
        stuck.append(memory_store.add_job({}))
        clock.advance(1)
    clock.advance(200)
    fresh = memory_store.add_job({})
    processor = make_processor(memory_store, ok_generator, clock)

    batch = processor.select_batch(memory_store.get_jobs_by_status("pending"))
    assert [j.id for j in batch] == stuck + [fresh]


def test_batch_quota_filled_by_stuck_jobs_first(memory_store, clock):
    stuck = []
    for _ in range(7):
        stuck.append(memory_store.add_job({}))
    clock.advance(300)
    fresh = [memory_store.add_job({}) for _ in range(3)]
    processor = make_processor(memory_store, ok_generator, clock)

    batch = [j.id for j in processor.select_batch(memory_store.get_jobs_by_status("pending"))]
    assert len(batch) == 5
    assert set(batch) <= set(stuck)
    assert not set(batch) & set(fresh)


def test_batch_skips_jobs_already_processing(memory_store, clock):
    ids = [memory_store.add_job({}) for _ in range(3)]
    processor = make_processor(memory_store, ok_generator, clock)
    assert processor._claim(ids[0])
    batch = processor.select_batch(memory_store.get_jobs_by_status("pending"))
    assert [j.id for j in batch] == ids[1:]


def test_tick_dispatches_all_five_and_completes_them(memory_store, clock):
    order = []

    async def recording(payload):
        order.append(payload["n"])
        return {"n": payload["n"]}

    for n in range(4):
        memory_store.add_job({"n": n})
    clock.advance(200)
    memory_store.add_job({"n": 4})
    processor = make_processor(memory_store, recording, clock)

    async def scenario():
        dispatched = await processor.tick()
        await processor.drain()
        return dispatched

    dispatched = asyncio.run(scenario())
    assert len(dispatched) == 5
    assert order[-1] == 4
    assert memory_store.count_by_status()["completed"] == 5


def test_immediate_dispatch_and_tick_run_job_once(memory_store, clock):
    calls = []

    async def slow(payload):
        calls.append(payload)
        await asyncio.sleep(0.02)
        return {"ok": True}

    processor = make_processor(memory_store, slow, clock)
    job_id = memory_store.add_job({})

    async def scenario():
        assert processor.process_job_immediately(job_id)
        await processor.tick()
        await asyncio.sleep(0)
        assert processor.is_processing(job_id)
        assert processor.process_job_immediately(job_id) is False
        assert await processor.tick() == []
        await processor.drain()

    asyncio.run(scenario())
    assert len(calls) == 1
    assert memory_store.get_job(job_id).status == JobStatus.COMPLETED


def test_timeout_cancels_generator_and_fails_job(memory_store, clock):
    cancelled = []

    async def hangs(payload):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise
        return {"late": True}

    processor = make_processor(memory_store, hangs, clock, job_timeout_seconds=0.05)
    job_id = memory_store.add_job({})
    asyncio.run(processor.process_job(job_id))
    job = memory_store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == f"Job {job_id} timed out after 0.05s"
    assert cancelled == [True]


def test_timeout_cannot_interrupt_thread_offloaded_work(memory_store, clock):
    release = threading.Event()
    finished = threading.Event()

    def blocking_call():
        release.wait(5)
        finished.set()
        return {"late": True}

    async def offloads(payload):
        return await asyncio.to_thread(blocking_call)

    processor = make_processor(memory_store, offloads, clock, job_timeout_seconds=0.05)
    job_id = memory_store.add_job({})

    async def scenario():
        await processor.process_job(job_id)
        # job already failed while the worker thread is still running
        still_running = not finished.is_set()
        release.set()
        await asyncio.to_thread(finished.wait, 5)
        return still_running

    assert asyncio.run(scenario()) is True
    assert finished.is_set()
    assert memory_store.get_job(job_id).status == JobStatus.FAILED


def test_start_is_idempotent_and_stop_leaves_dispatched_work(memory_store, clock):

    async def scenario():
        gate = asyncio.Event()

        async def waits(payload):
            await gate.wait()
            return {"done": True}

        processor = make_processor(memory_store, waits, clock)
        job_id = memory_store.add_job({})
        assert processor.start(0.01) is True
        assert processor.start(0.01) is False
        for _ in range(100):
            if processor.is_processing(job_id):
                break
            await asyncio.sleep(0.01)
        processor.stop()
        assert not processor.is_active
        gate.set()
        await processor.drain()
        return job_id

    job_id = asyncio.run(scenario())
    assert memory_store.get_job(job_id).status == JobStatus.COMPLETED


def test_loop_picks_up_jobs_enqueued_after_start(memory_store):
    processor = make_processor(memory_store, ok_generator)

    async def scenario():
        processor.start(0.01)
        job_id = memory_store.add_job({"riskTolerance": 7})
        for _ in range(200):
            if memory_store.get_job(job_id).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        processor.stop()
        await processor.drain()
        return job_id

    job_id = asyncio.run(scenario())
    assert memory_store.get_job(job_id).status == JobStatus.COMPLETED
    assert processor.last_activity is not None


def test_store_failure_during_tick_does_not_stop_loop(memory_store):
    processor = make_processor(memory_store, ok_generator)
    calls = {"n": 0}
    original = memory_store.get_jobs_by_status

    def flaky(status):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OSError("disk hiccup")
        return original(status)

    memory_store.get_jobs_by_status = flaky

    async def scenario():
        job_id = memory_store.add_job({})
        processor.start(0.01)
        for _ in range(200):
            if memory_store.get_job(job_id).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        processor.stop()
        await processor.drain()
        return job_id

    job_id = asyncio.run(scenario())
    assert memory_store.get_job(job_id).status == JobStatus.COMPLETED
    assert calls["n"] >= 2


def test_health_reports_idle_processor_with_pending_work(memory_store, clock):
    processor = make_processor(memory_store, ok_generator, clock, inactivity_window_seconds=300)
    report = processor.health(pending_count=0)
    assert report["healthy"] is False
    assert "processor loop is not running" in report["issues"]

    async def scenario():
        processor.start(60)
        try:
            clock.advance(301)
            idle = processor.health(pending_count=3)
            quiet = processor.health(pending_count=0)
        finally:
            processor.stop()
        return idle, quiet

    idle, quiet = asyncio.run(scenario())
    assert idle["healthy"] is False
    assert any("no activity" in issue for issue in idle["issues"])
    assert quiet["healthy"] is True
