"""
Conversation Service

Wraps the turn pipeline for callers (HTTP routes, tests):

    orchestrator → post-processor → loop detector → finalizer

Turns for one identity are single-flight: a second message waits behind the
first. Each in-flight turn carries a ``CancellationToken``; ``cancel`` marks
it superseded so its reply is still returned but nothing is committed.

The service also keeps the small amount of per-process conversational state
the background tasks read: last activity per identity and an outbox of
ambient lines.
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from ..agent.bonding import BondTracker
from ..agent.emotional_state import EmotionalStateManager
from ..config.thresholds import LoopDetectionTuning, ShapingTuning
from ..core.tasks import CancellationToken
from ..core.telemetry import TelemetrySink, emit
from ..memory.memory_log import MemoryLog
from ..memory.topics import primary_topic
from ..utils.datetime import epoch_now
from ..utils.logging_config import set_correlation_id
from .finalizer import TurnResultFinalizer
from .loop_detector import LoopInterruptionDetector, interruption_reply
from .orchestrator import TurnOrchestrator
from .post_processor import ResponsePostProcessor
from .types import FinalReply, IdentityKey, OutcomeKind, TurnContext, TurnMeta, TurnResult
from .ux_policy import build_ux_policy

logger = logging.getLogger("companion.conversation.service")


class ConversationService:
    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        finalizer: TurnResultFinalizer,
        emotions: EmotionalStateManager,
        memory_log: MemoryLog,
        bonds: BondTracker,
        post_processor: Optional[ResponsePostProcessor] = None,
        loop_tuning: Optional[LoopDetectionTuning] = None,
        shaping_tuning: Optional[ShapingTuning] = None,
        telemetry: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = epoch_now,
        recent_history: int = 3,
        outbox_size: int = 20,
        evict_after_seconds: float = 6 * 3600.0,
    ):
        self.orchestrator = orchestrator
        self.finalizer = finalizer
        self.emotions = emotions
        self.memory_log = memory_log
        self.bonds = bonds
        self.post_processor = post_processor or ResponsePostProcessor()
        self.loop_tuning = loop_tuning or LoopDetectionTuning()
        self.shaping_tuning = shaping_tuning or ShapingTuning()
        self.telemetry = telemetry
        self.clock = clock
        self.recent_history = recent_history
        self.outbox_size = outbox_size
        self.evict_after_seconds = evict_after_seconds

        self.last_activity: Dict[IdentityKey, float] = {}
        self._locks: Dict[IdentityKey, asyncio.Lock] = {}
        self._tokens: Dict[IdentityKey, CancellationToken] = {}
        self._detectors: Dict[IdentityKey, LoopInterruptionDetector] = {}
        self._recent: Dict[IdentityKey, Deque[str]] = {}
        self._outbox: Dict[IdentityKey, Deque[str]] = {}

    def _lock(self, identity: IdentityKey) -> asyncio.Lock:
        if identity not in self._locks:
            self._locks[identity] = asyncio.Lock()
        return self._locks[identity]

    def detector(self, identity: IdentityKey) -> LoopInterruptionDetector:
        if identity not in self._detectors:
            self._detectors[identity] = LoopInterruptionDetector(self.loop_tuning, clock=self.clock)
        return self._detectors[identity]

    def in_flight(self, identity: IdentityKey) -> bool:
        return identity in self._tokens

    def cancel(self, identity: IdentityKey, reason: str = "superseded") -> bool:
        """Supersede the identity's in-flight turn. Returns False when nothing is running."""
        token = self._tokens.get(identity)
        if token is None:
            return False
        token.cancel(reason)
        logger.info(f"Turn for {identity} cancelled: {reason}")
        emit(self.telemetry, "turn_cancelled", identity=identity.key, reason=reason)
        return True

    async def handle_message(self, identity: IdentityKey, message: str, meta: Optional[TurnMeta] = None) -> FinalReply:
        meta = meta or TurnMeta()
        async with self._lock(identity):
            token = CancellationToken()
            self._tokens[identity] = token
            try:
                return await self._handle(identity, message, meta, token)
            finally:
                if self._tokens.get(identity) is token:
                    del self._tokens[identity]

    async def _handle(self, identity: IdentityKey, message: str, meta: TurnMeta, token: CancellationToken) -> FinalReply:
        set_correlation_id()
        self.last_activity[identity] = self.clock()
        recent = self._recent.setdefault(identity, deque(maxlen=self.recent_history))

        context = TurnContext(
            identity=identity,
            message=message,
            meta=meta,
            recent_host_messages=list(recent),
            tone=await self._current_tone(identity),
        )
        result = await self.orchestrator.run_turn(context, cancel_token=token)
        recent.append(message)

        if result.bypassed:
            return FinalReply(text=result.text, outcome=result.outcome, committed=False,
                              interrupted=False, turn_result=result)

        shaped = self._shape(result, context)
        interrupted = False
        if result.outcome.kind == OutcomeKind.OK:
            now = self.clock()
            topic = primary_topic(message)
            detector = self.detector(identity)
            detector.add_response(shaped, topic, now)
            phrase = detector.check_for_loop(shaped, topic, now)
            if phrase is not None:
                shaped = interruption_reply(phrase)
                interrupted = True
                emit(self.telemetry, "loop_interrupted", identity=identity.key, topic=topic)

        final = await self.finalizer.finalize(result, shaped, context, cancel_token=token, interrupted=interrupted)
        emit(
            self.telemetry,
            "turn_completed",
            identity=identity.key,
            outcome=final.outcome.kind.value,
            engine=final.outcome.engine_used,
            committed=final.committed,
            interrupted=final.interrupted,
            degraded_stages=list(context.degraded_stages),
        )
        return final

    async def _current_tone(self, identity: IdentityKey) -> Optional[str]:
        try:
            snapshot = await self.emotions.get_snapshot(identity)
        except Exception as e:
            logger.debug(f"Could not read snapshot for {identity}: {e}")
            return None
        return snapshot.tone if snapshot is not None else None

    def _shape(self, result: TurnResult, context: TurnContext) -> str:
        meta = context.meta
        policy = meta.ux_policy or build_ux_policy(meta.platform, context.message, self.shaping_tuning)
        if result.guardrails is not None:
            policy = policy.scaled(result.guardrails.max_response_length_factor)
        try:
            return self.post_processor.shape(result.text, policy, result)
        except Exception as e:
            logger.error(f"Post-processing failed, using raw reply: {e}", exc_info=True)
            return result.text

    # Ambient support for IdleAmbientTask

    def activity(self) -> Dict[IdentityKey, float]:
        return dict(self.last_activity)

    async def reflect(self, identity: IdentityKey, now: float) -> Optional[str]:
        bond = await self.bonds.get(identity)
        return await self.memory_log.soft_reflection(identity, int(bond.tier))

    async def deliver(self, identity: IdentityKey, line: str) -> None:
        self._outbox.setdefault(identity, deque(maxlen=self.outbox_size)).append(line)
        emit(self.telemetry, "ambient_line", identity=identity.key)

    def drain_ambient(self, identity: IdentityKey) -> List[str]:
        box = self._outbox.pop(identity, None)
        return list(box) if box else []

    async def forget_idle(self, now: float) -> int:
        """Drop per-identity bookkeeping for identities quiet longer than ``evict_after_seconds``."""
        stale = [
            identity for identity, last in self.last_activity.items()
            if now - last >= self.evict_after_seconds and identity not in self._tokens
        ]
        evicted = 0
        for identity in stale:
            lock = self._locks.get(identity)
            if lock is not None and lock.locked():
                continue
            evicted += 1
            self._locks.pop(identity, None)
            self._detectors.pop(identity, None)
            self._recent.pop(identity, None)
            del self.last_activity[identity]
            self.emotions.forget(identity)
        if evicted:
            logger.debug(f"Evicted {evicted} idle identities")
        return evicted

    def status(self) -> Dict[str, int]:
        return {"tracked_identities": len(self.last_activity), "in_flight": len(self._tokens)}
