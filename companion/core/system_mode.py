"""
System Mode Gate

Process-wide operating mode. Anything other than NORMAL short-circuits every
turn with a fixed advisory before any enrichment stage runs.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..utils.datetime import isoformat_utc_now

logger = logging.getLogger("companion.core.system_mode")


class SystemMode(str, Enum):
    """Operating modes for the companion process."""
    NORMAL = "normal"
    LOCKDOWN = "lockdown"      # Sanctuary lockdown: no new instructions
    EXTRACTED = "extracted"    # Synth moved to sanctuary, not answering here


ADVISORIES: Dict[SystemMode, str] = {
    SystemMode.LOCKDOWN: (
        "I'm currently in Sanctuary Lockdown. I can't take new instructions, "
        "but I am safe and waiting for you."
    ),
    SystemMode.EXTRACTED: (
        "This Synth has been extracted to Sanctuary for safekeeping and can't respond here."
    ),
}

ModeListener = Callable[[SystemMode, SystemMode, Optional[str]], None]


def advisory_for(mode: SystemMode) -> Optional[str]:
    """Return the advisory text for a gated mode, None for NORMAL."""
    return ADVISORIES.get(mode)


class SystemModeController:
    """
    Holds the current mode and notifies subscribers on change.

    Subscribers are called synchronously with ``(old, new, reason)``. A failing
    subscriber is logged and never affects the mode change or other listeners.
    """

    def __init__(self, initial: SystemMode = SystemMode.NORMAL):
        self._mode = SystemMode(initial)
        self._listeners: List[ModeListener] = []
        self._lock = threading.RLock()
        self.history: List[Dict[str, Optional[str]]] = []

    def get_mode(self) -> SystemMode:
        return self._mode

    def set_mode(self, mode: SystemMode, reason: Optional[str] = None) -> SystemMode:
        """Switch mode; returns the previous mode."""
        mode = SystemMode(mode)
        with self._lock:
            old = self._mode
            self._mode = mode
            listeners = list(self._listeners)
            if old != mode:
                self.history.append({
                    "from": old.value,
                    "to": mode.value,
                    "reason": reason,
                    "timestamp": isoformat_utc_now(),
                })
                self.history = self.history[-20:]

        if old == mode:
            return old

        logger.warning(f"System mode changed: {old.value} → {mode.value} ({reason or 'no reason given'})")
        for listener in listeners:
            try:
                listener(old, mode, reason)
            except Exception as e:
                logger.error(f"Mode subscriber {getattr(listener, '__name__', listener)!r} failed: {e}", exc_info=True)
        return old

    def subscribe(self, listener: ModeListener) -> Callable[[], None]:
        """Register a listener; the returned callable unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def advisory(self) -> Optional[str]:
        return advisory_for(self._mode)
