import random

import pytest

from companion.core.tasks import AMBIENT_LINES, HeartbeatTask, IdleAmbientTask, MaintenanceTask, PeriodicTask


class CountingTask(PeriodicTask):
    name = "counting"

    def __init__(self, interval_seconds, fail=False):
        super().__init__(interval_seconds)
        self.seen = []
        self.fail = fail

    async def run(self, now):
        self.seen.append(now)
        if self.fail:
            raise RuntimeError("task bug")


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        CountingTask(0)


@pytest.mark.asyncio
async def test_tick_runs_only_when_due():
    task = CountingTask(60)
    assert await task.tick(1000.0)
    assert not await task.tick(1030.0)
    # Slightly early scheduler wake-ups still count
    assert await task.tick(1059.9)
    assert task.seen == [1000.0, 1059.9]
    assert task.runs == 2


@pytest.mark.asyncio
async def test_cancelled_task_never_runs():
    task = CountingTask(60)
    task.cancel("shutdown")
    assert not await task.tick(1000.0)
    assert task.status()["cancelled"]


@pytest.mark.asyncio
async def test_failures_are_counted_not_raised():
    task = CountingTask(60, fail=True)
    assert await task.tick(1000.0)
    assert task.failures == 1
    assert await task.tick(1060.0)
    assert task.failures == 2


@pytest.mark.asyncio
async def test_heartbeat_emits_status(telemetry):
    task = HeartbeatTask(30, telemetry=telemetry, status_provider=lambda: {"mode": "normal", "in_flight": 0})
    await task.tick(1000.0)

    (event,) = telemetry.of_type("heartbeat")
    assert event["mode"] == "normal"
    assert task.last_status["in_flight"] == 0


class _Outbox:
    def __init__(self, reflections=None):
        self.reflections = reflections or {}
        self.delivered = []

    async def reflect(self, identity, now):
        return self.reflections.get(identity)

    async def deliver(self, identity, line):
        self.delivered.append((identity, line))


@pytest.mark.asyncio
async def test_idle_ambient_speaks_once_per_idle_spell():
    activity = {"a": 0.0, "b": 950.0}
    outbox = _Outbox({"a": "I was thinking about something… you told me about the sea."})
    task = IdleAmbientTask(60, 300, activity=lambda: activity, reflect=outbox.reflect,
                           deliver=outbox.deliver, rng=random.Random(7))

    await task.tick(1000.0)
    assert outbox.delivered == [("a", "I was thinking about something… you told me about the sea.")]

    await task.tick(1100.0)
    assert len(outbox.delivered) == 1

    # "a" talks again, then goes quiet for another spell
    activity["a"] = 1150.0
    await task.tick(1500.0)
    spoken = dict(outbox.delivered[1:])
    assert set(spoken) == {"a", "b"}
    assert spoken["b"] in AMBIENT_LINES


@pytest.mark.asyncio
async def test_maintenance_reports_applied_and_skipped():
    calls = []

    async def identities():
        return ["a", "b"]

    async def decay(identity, now):
        calls.append(("decay", identity))
        return identity == "a"

    async def prune(identity, now):
        raise RuntimeError("store offline")

    task = MaintenanceTask(3600, identities=identities, steps=[decay, prune])
    await task.tick(1000.0)

    assert calls == [("decay", "a"), ("decay", "b")]
    assert task.last_report == {"identities": 2, "applied": 1, "skipped": 3}
    assert task.failures == 0


@pytest.mark.asyncio
async def test_maintenance_runs_sweeps_once_per_pass():
    swept = []

    async def identities():
        return ["a"]

    async def noop(identity, now):
        return False

    async def broken_sweep(now):
        raise RuntimeError("boom")

    async def sweep(now):
        swept.append(now)

    task = MaintenanceTask(3600, identities=identities, steps=[noop], sweeps=[broken_sweep, sweep])
    await task.tick(1000.0)

    assert swept == [1000.0]
    assert task.failures == 0
