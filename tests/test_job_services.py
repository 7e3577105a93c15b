import asyncio
import time
from concurrent.futures import ThreadPoolExecutor

from advisor.jobs.models import JobStatus
from advisor.jobs.registry import JobServices
from advisor.jobs.store import MemoryJobStore


async def ok_generator(payload):
    return {"ok": True}


def make_services(**kwargs):
    return JobServices(ok_generator, store_factory=MemoryJobStore, processor_settings={"poll_interval_seconds": 0.01}, **kwargs)


def test_store_is_created_once_under_concurrent_access():
    created = []

    def slow_factory():
        time.sleep(0.01)
        store = MemoryJobStore()
        created.append(store)
        return store

    services = JobServices(ok_generator, store_factory=slow_factory)
    with ThreadPoolExecutor(max_workers=8) as pool:
        stores = list(pool.map(lambda _: services.store, range(16)))
    assert len(created) == 1
    assert all(s is created[0] for s in stores)


def test_concurrent_ensure_started_builds_one_processor():
    services = make_services()

    async def scenario():
        async def caller():
            await asyncio.sleep(0)
            return services.ensure_started()

        processors = await asyncio.gather(*(caller() for _ in range(20)))
        running = services.processor.is_active
        await services.shutdown()
        return processors, running

    processors, running = asyncio.run(scenario())
    assert running
    assert len({id(p) for p in processors}) == 1


def test_restart_replaces_processor_on_same_store():
    services = make_services()

    async def scenario():
        first = services.ensure_started()
        store = services.store
        second = services.restart()
        state = (first.is_active, second.is_active, second.store is store, second is not first)
        job_id = store.add_job({})
        for _ in range(200):
            if store.get_job(job_id).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        await services.shutdown(wait=True)
        return state, store.get_job(job_id).status

    (first_active, second_active, same_store, replaced), status = asyncio.run(scenario())
    assert not first_active
    assert second_active and same_store and replaced
    assert services.restart_count == 1
    assert status == JobStatus.COMPLETED


def test_cleanup_deletes_job_after_grace_period_once():
    services = make_services()

    async def scenario():
        job_id = services.store.add_job({})
        assert services.schedule_cleanup(job_id, delay_seconds=0.02) is True
        assert services.schedule_cleanup(job_id, delay_seconds=0.02) is False
        assert services.pending_cleanups == 1
        assert services.store.get_job(job_id) is not None
        await asyncio.sleep(0.1)
        return job_id

    job_id = asyncio.run(scenario())
    assert services.store.get_job(job_id) is None
    assert services.pending_cleanups == 0


def test_shutdown_cancels_pending_cleanups():
    services = make_services()

    async def scenario():
        job_id = services.store.add_job({})
        services.schedule_cleanup(job_id, delay_seconds=30)
        await services.shutdown()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return job_id

    job_id = asyncio.run(scenario())
    assert services.store.get_job(job_id) is not None
    assert services.pending_cleanups == 0
