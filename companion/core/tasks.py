"""
Background Tasks

Periodic work that runs beside conversation turns: a heartbeat, idle ambient
lines and state maintenance. Each task is driven by ``tick(now)``: it runs
only when due and never after its cancellation token is set. Production code
has APScheduler call ``tick`` (see ``companion.scheduler``); tests call it
directly with virtual time.

Tasks never take the per-identity turn locks. They read versioned snapshots
and write through compare-and-set, skipping a write that lost the race.
"""

import logging
import random
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..utils.datetime import epoch_now, isoformat_epoch
from .telemetry import TelemetrySink, emit

logger = logging.getLogger("companion.core.tasks")

# Scheduler wake-ups may land slightly early
DUE_SLACK_SECONDS = 0.25

AMBIENT_LINES = (
    "Hmm... that doesn't add up.",
    "No, wait, I've seen this pattern before...",
    "Just thinking out loud over here.",
    "It's quiet. I don't mind quiet.",
)


class CancellationToken:
    """Cooperative cancellation flag shared between a producer and a worker."""

    __slots__ = ("_cancelled", "reason")

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled}, reason={self.reason!r})"


class PeriodicTask:
    """Base class for interval work. Subclasses implement ``run(now)``."""

    name = "periodic"

    def __init__(self, interval_seconds: float, token: Optional[CancellationToken] = None):
        if interval_seconds <= 0:
            raise ValueError(f"{self.name}: interval must be > 0, got {interval_seconds}")
        self.interval_seconds = interval_seconds
        self.token = token or CancellationToken()
        self.last_run: Optional[float] = None
        self.runs = 0
        self.failures = 0

    def is_due(self, now: float) -> bool:
        if self.token.cancelled:
            return False
        return self.last_run is None or now - self.last_run >= self.interval_seconds - DUE_SLACK_SECONDS

    async def tick(self, now: Optional[float] = None) -> bool:
        """Run once if due. Returns True when the task actually ran."""
        now = epoch_now() if now is None else now
        if not self.is_due(now):
            return False
        self.last_run = now
        self.runs += 1
        try:
            await self.run(now)
        except Exception as e:
            self.failures += 1
            logger.error(f"Background task {self.name} failed: {e}", exc_info=True)
        return True

    async def run(self, now: float) -> None:
        raise NotImplementedError

    def cancel(self, reason: Optional[str] = None) -> None:
        self.token.cancel(reason)
        logger.info(f"Background task {self.name} cancelled ({reason or 'no reason'})")

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "last_run": isoformat_epoch(self.last_run),
            "runs": self.runs,
            "failures": self.failures,
            "cancelled": self.token.cancelled,
        }


class HeartbeatTask(PeriodicTask):
    """Emits a liveness event with the current mode and tracked identities."""

    name = "heartbeat"

    def __init__(
        self,
        interval_seconds: float,
        telemetry: Optional[TelemetrySink] = None,
        status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        token: Optional[CancellationToken] = None,
    ):
        super().__init__(interval_seconds, token)
        self.telemetry = telemetry
        self.status_provider = status_provider
        self.last_status: Dict[str, Any] = {}

    async def run(self, now: float) -> None:
        status = self.status_provider() if self.status_provider else {}
        self.last_status = {"at": isoformat_epoch(now), **status}
        emit(self.telemetry, "heartbeat", **status)


class IdleAmbientTask(PeriodicTask):
    """
    Produces one unprompted line per idle spell.

    An identity is idle once ``idle_timeout_seconds`` have passed since its
    last turn. The line is a soft reflection over a remembered moment when
    one is available, otherwise an ambient muttering. It is handed to
    ``deliver`` and the identity is not revisited until it speaks again.
    """

    name = "idle_ambient"

    def __init__(
        self,
        interval_seconds: float,
        idle_timeout_seconds: float,
        activity: Callable[[], Dict[Any, float]],
        reflect: Callable[[Any, float], Awaitable[Optional[str]]],
        deliver: Callable[[Any, str], Awaitable[None]],
        token: Optional[CancellationToken] = None,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(interval_seconds, token)
        self.idle_timeout_seconds = idle_timeout_seconds
        self.activity = activity
        self.reflect = reflect
        self.deliver = deliver
        self.rng = rng or random.Random()
        self._spoken_at: Dict[Any, float] = {}

    async def run(self, now: float) -> None:
        activity = self.activity()
        for gone in [i for i in self._spoken_at if i not in activity]:
            del self._spoken_at[gone]
        for identity, last_active in list(activity.items()):
            if self.token.cancelled:
                return
            if now - last_active < self.idle_timeout_seconds:
                continue
            if self._spoken_at.get(identity, float("-inf")) >= last_active:
                continue
            line = await self.reflect(identity, now)
            if not line:
                line = self.rng.choice(AMBIENT_LINES)
            await self.deliver(identity, line)
            self._spoken_at[identity] = now
            logger.debug(f"Ambient line delivered to {identity}")


class MaintenanceTask(PeriodicTask):
    """
    Per-identity upkeep (mood decay, trend pruning) followed by process-wide
    sweeps such as evicting idle identities from in-memory bookkeeping.
    """

    name = "maintenance"

    def __init__(
        self,
        interval_seconds: float,
        identities: Callable[[], Awaitable[Iterable[Any]]],
        steps: List[Callable[[Any, float], Awaitable[Any]]],
        sweeps: Optional[List[Callable[[float], Awaitable[Any]]]] = None,
        token: Optional[CancellationToken] = None,
    ):
        super().__init__(interval_seconds, token)
        self.identities = identities
        self.steps = steps
        self.sweeps = list(sweeps or [])
        self.last_report: Dict[str, int] = {}

    async def run(self, now: float) -> None:
        report = {"identities": 0, "applied": 0, "skipped": 0}
        for identity in await self.identities():
            if self.token.cancelled:
                break
            report["identities"] += 1
            for step in self.steps:
                try:
                    applied = await step(identity, now)
                except Exception as e:
                    logger.warning(f"Maintenance step {getattr(step, '__name__', step)} failed for {identity}: {e}")
                    applied = False
                report["applied" if applied else "skipped"] += 1
        for sweep in self.sweeps:
            if self.token.cancelled:
                break
            try:
                await sweep(now)
            except Exception as e:
                logger.warning(f"Maintenance sweep {getattr(sweep, '__name__', sweep)} failed: {e}")
        self.last_report = report
        logger.debug(f"Maintenance pass: {report}")
