import pytest

from companion.core.tasks import PeriodicTask
from companion.main import start_background_tasks, shutdown_services
from companion.scheduler.scheduler_service import SchedulerService


class NoopTask(PeriodicTask):
    name = "noop"

    async def run(self, now):
        pass


@pytest.mark.asyncio
async def test_periodic_task_is_registered_and_cancelled_on_stop():
    scheduler = SchedulerService()
    task = NoopTask(3600)

    assert await scheduler.add_periodic_task(task) == "noop"
    await scheduler.start()
    try:
        (job,) = await scheduler.get_all_jobs()
        assert job["id"] == "noop"
        assert job["task"]["name"] == "noop"
    finally:
        await scheduler.stop()

    assert not scheduler.active
    assert task.token.cancelled


@pytest.mark.asyncio
async def test_re_adding_a_task_keeps_it_live():
    scheduler = SchedulerService()
    task = NoopTask(3600)
    await scheduler.add_periodic_task(task)
    await scheduler.add_periodic_task(task)
    assert not task.token.cancelled
    assert len(scheduler.tasks) == 1


@pytest.mark.asyncio
async def test_wrapped_job_records_failures():
    scheduler = SchedulerService()

    async def broken():
        raise RuntimeError("job bug")

    await scheduler.add_job("broken", broken, "interval", seconds=3600)
    job = scheduler.jobs["broken"]
    assert await job.func() is None
    assert scheduler.job_metrics["broken"]["failures"] == 1


@pytest.mark.asyncio
async def test_background_tasks_respect_config(build_services, monkeypatch):
    services = await build_services()
    assert await start_background_tasks(services) is None

    monkeypatch.setattr(services["config"], "background_tasks_enabled", True)
    scheduler = await start_background_tasks(services)
    assert scheduler.active
    assert set(scheduler.tasks) == {"heartbeat", "idle_ambient", "maintenance"}

    await shutdown_services(services)
    assert not scheduler.active
    assert all(task.token.cancelled for task in services["tasks"])
