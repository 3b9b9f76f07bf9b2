"""
Graceful Degradation for Turn Stages

Every optional enrichment stage runs behind a ``StageAdapter``: a short
deadline plus a registered default. When a stage raises or overruns, the
failure is logged, reported to telemetry as ``stage_degraded`` and the stage
default is returned instead, so the turn always continues.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from ..utils.datetime import isoformat_utc_now
from .telemetry import TelemetrySink, emit

logger = logging.getLogger("companion.core.graceful_degradation")

T = TypeVar("T")


class DegradationLevel:
    """Coarse health of the turn pipeline, derived from recent stage failures."""
    FULL = "full"           # All stages healthy
    REDUCED = "reduced"     # Some enrichment stages falling back
    MINIMAL = "minimal"     # Most enrichment stages falling back


@dataclass(frozen=True)
class StageOutcome(Generic[T]):
    """Result of running one stage through its adapter."""
    stage: str
    value: T
    degraded: bool
    elapsed_ms: float
    error: Optional[str] = None


class FallbackRegistry:
    """Registry of default factories keyed by stage name."""

    def __init__(self):
        self.fallbacks: Dict[str, Callable[..., Any]] = {}

    def register_fallback(self, stage: str, fallback_func: Callable[..., Any]) -> None:
        self.fallbacks[stage] = fallback_func
        logger.debug(f"Registered fallback for stage {stage}")

    def get_fallback(self, stage: str) -> Optional[Callable[..., Any]]:
        return self.fallbacks.get(stage)


class DegradationManager:
    """Tracks per-stage failures so /health can report the pipeline's level."""

    def __init__(self, window: int = 20):
        self.window = window
        self.current_level = DegradationLevel.FULL
        self.stage_results: Dict[str, List[bool]] = {}
        self.degradation_history: List[Dict[str, str]] = []

    def record(self, stage: str, degraded: bool) -> None:
        results = self.stage_results.setdefault(stage, [])
        results.append(degraded)
        del results[:-self.window]
        self._reassess()

    def _reassess(self) -> None:
        failing = 0
        for results in self.stage_results.values():
            # A stage counts as failing when most of its recent runs degraded
            if results and sum(results) * 2 > len(results):
                failing += 1

        total = max(len(self.stage_results), 1)
        if failing == 0:
            new_level = DegradationLevel.FULL
        elif failing * 2 > total:
            new_level = DegradationLevel.MINIMAL
        else:
            new_level = DegradationLevel.REDUCED

        if new_level != self.current_level:
            self.degradation_history.append({
                "from": self.current_level,
                "to": new_level,
                "timestamp": isoformat_utc_now(),
            })
            self.degradation_history = self.degradation_history[-10:]
            logger.warning(f"Degradation level changed: {self.current_level} → {new_level}")
            self.current_level = new_level

    def get_status(self) -> Dict[str, Any]:
        return {
            "current_level": self.current_level,
            "stages": {
                stage: {"recent_runs": len(r), "recent_degraded": sum(r)}
                for stage, r in self.stage_results.items()
            },
            "degradation_history": list(self.degradation_history),
            "timestamp": isoformat_utc_now(),
        }


class StageAdapter:
    """
    Uniform try/fallback wrapper for one optional stage.

    Args:
        name: Stage name used in logs and telemetry
        default: Zero-argument callable producing the fallback value; it may
            also accept the original call's keyword arguments
        timeout: Deadline in seconds (None disables it)
    """

    def __init__(
        self,
        name: str,
        default: Callable[..., Any],
        timeout: Optional[float] = 1.5,
        telemetry: Optional[TelemetrySink] = None,
        manager: Optional[DegradationManager] = None,
    ):
        self.name = name
        self.default = default
        self.timeout = timeout
        self.telemetry = telemetry
        self.manager = manager

    async def run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> StageOutcome:
        start = time.monotonic()
        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result) or isinstance(result, Awaitable):
                if self.timeout is not None:
                    result = await asyncio.wait_for(result, timeout=self.timeout)
                else:
                    result = await result
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            return self._degrade(start, f"timed out after {self.timeout}s")
        except Exception as e:
            return self._degrade(start, f"{type(e).__name__}: {e}")

        elapsed = (time.monotonic() - start) * 1000
        if self.manager is not None:
            self.manager.record(self.name, False)
        return StageOutcome(stage=self.name, value=result, degraded=False, elapsed_ms=elapsed)

    def _degrade(self, start: float, reason: str) -> StageOutcome:
        elapsed = (time.monotonic() - start) * 1000
        logger.warning(f"⚠️ Stage {self.name} degraded ({reason}); using fallback")
        emit(self.telemetry, "stage_degraded", stage=self.name, reason=reason, elapsed_ms=round(elapsed, 2))
        if self.manager is not None:
            self.manager.record(self.name, True)
        try:
            value = self.default()
        except Exception as fallback_error:
            # Defaults are plain constructors; a failure here is a programming error
            logger.error(f"❌ Fallback for stage {self.name} also failed: {fallback_error}", exc_info=True)
            value = None
        return StageOutcome(stage=self.name, value=value, degraded=True, elapsed_ms=elapsed, error=reason)
