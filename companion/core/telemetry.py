"""
Telemetry Sink

Best-effort event reporting for the turn pipeline. Emitting an event can never
fail a turn: ``emit`` swallows and logs sink errors.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol

from ..utils.datetime import isoformat_utc_now
from ..utils.logging_config import get_correlation_id

logger = logging.getLogger("companion.core.telemetry")


class TelemetrySink(Protocol):
    def log(self, event: Dict[str, Any]) -> None:
        ...


class LoggingTelemetrySink:
    """Writes events to the ``companion.telemetry`` logger as structured extras."""

    def __init__(self, logger_name: str = "companion.telemetry", level: int = logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self._level = level

    def log(self, event: Dict[str, Any]) -> None:
        self._logger.log(self._level, f"telemetry:{event.get('type')}", extra={"telemetry": event})


class InMemoryTelemetrySink:
    """Bounded in-memory sink, mainly for tests and the state endpoint."""

    def __init__(self, capacity: int = 500):
        self.events: Deque[Dict[str, Any]] = deque(maxlen=capacity)

    def log(self, event: Dict[str, Any]) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e.get("type") == event_type]

    def clear(self) -> None:
        self.events.clear()


def emit(sink: Optional[TelemetrySink], event_type: str, **fields: Any) -> None:
    """Send one event to ``sink``. Never raises."""
    if sink is None:
        return
    event = {
        "type": event_type,
        "timestamp": isoformat_utc_now(),
        "correlation_id": get_correlation_id(),
        **fields,
    }
    try:
        sink.log(event)
    except Exception as e:
        logger.debug(f"Telemetry sink dropped {event_type}: {e}")
