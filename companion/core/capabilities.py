"""
Stage Registry and Capabilities

The turn pipeline has a fixed set of optional stages. Each is registered once
with its default value and deadline; the orchestrator looks adapters up by
name. ``compute_capabilities`` reports what is configured for /health.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from ..utils.datetime import isoformat_utc_now
from .graceful_degradation import DegradationManager, FallbackRegistry, StageAdapter
from .telemetry import TelemetrySink

# Stage names in pipeline order
SENTIMENT = "sentiment"
EMOTIONAL_INGEST = "emotional_ingest"
MEMORY_CONTEXT = "memory_context"
CLIMATE = "climate"
BOND = "bond"
REFINE = "refine"

PIPELINE_STAGES = (SENTIMENT, EMOTIONAL_INGEST, MEMORY_CONTEXT, CLIMATE, BOND, REFINE)


class StageRegistry:
    """Static registry of stage adapters sharing one deadline and telemetry sink."""

    def __init__(
        self,
        timeout: Optional[float] = 1.5,
        telemetry: Optional[TelemetrySink] = None,
        manager: Optional[DegradationManager] = None,
    ):
        self.timeout = timeout
        self.telemetry = telemetry
        self.manager = manager or DegradationManager()
        self.fallbacks = FallbackRegistry()
        self._adapters: Dict[str, StageAdapter] = {}

    def register(self, name: str, default: Callable[[], Any], timeout: Optional[float] = None) -> StageAdapter:
        self.fallbacks.register_fallback(name, default)
        adapter = StageAdapter(
            name,
            default,
            timeout=self.timeout if timeout is None else timeout,
            telemetry=self.telemetry,
            manager=self.manager,
        )
        self._adapters[name] = adapter
        return adapter

    def adapter(self, name: str) -> StageAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise KeyError(f"Unknown pipeline stage: {name}") from None

    def names(self) -> List[str]:
        return list(self._adapters)


def compute_capabilities(
    config: Any,
    registry: Optional[StageRegistry] = None,
    responder_states: Optional[Dict[str, Dict[str, Any]]] = None,
    mode: Optional[str] = None,
) -> Dict[str, Any]:
    """Compute current capabilities and limitations from configuration.

    Returns a dict shape:
    {
      "capabilities": {
        "responder": {"backend": str, "model": str, "local_fallback": bool},
        "persistence": {"backend": "sql" | "memory"},
        "stages": [str, ...],
        "background_tasks": {"enabled": bool},
      },
      "limitations": [str, ...],
      "degradation": {...},
      "mode": str | None,
      "generated_at": iso8601
    }
    """
    responder_cfg = config.get_responder_config()
    task_cfg = config.get_task_config()

    capabilities = {
        "responder": {
            "backend": responder_cfg.get("backend"),
            "model": responder_cfg.get("model"),
            "local_fallback": bool(responder_cfg.get("local_base_url")),
        },
        "persistence": {"backend": "sql" if config.database_url else "memory"},
        "stages": registry.names() if registry else list(PIPELINE_STAGES),
        "background_tasks": {"enabled": bool(task_cfg.get("enabled"))},
    }

    limitations: List[str] = []
    if not capabilities["responder"]["local_fallback"]:
        limitations.append("No local fallback responder configured (LOCAL_RESPONDER_BASE_URL unset).")
    if capabilities["persistence"]["backend"] == "memory":
        limitations.append("State is kept in memory only (DATABASE_URL unset).")
    if not capabilities["background_tasks"]["enabled"]:
        limitations.append("Background tasks are disabled (BACKGROUND_TASKS_ENABLED=false).")
    for name, state in (responder_states or {}).items():
        if state.get("state") == "open":
            limitations.append(f"Responder circuit '{name}' is open.")

    return {
        "capabilities": capabilities,
        "limitations": limitations,
        "degradation": registry.manager.get_status() if registry else None,
        "mode": mode,
        "generated_at": isoformat_utc_now(),
    }
