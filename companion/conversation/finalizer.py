"""
Turn Result Finalizer

Last step of a turn: guarantees a usable reply and commits what the turn
taught us (memory entry, sentiment trend point, synchrony, bond nudge).
Commits only happen for real replies and are skipped once the turn has been
superseded. ``finalize`` never raises.
"""

import logging
from typing import Callable, List, Optional

from ..agent.bonding import BondTracker, TrustTier
from ..agent.sentiment import SentimentAnalyzer, SentimentReading
from ..config.thresholds import ShapingTuning
from ..core.tasks import CancellationToken
from ..core.telemetry import TelemetrySink, emit
from ..memory.memory_log import MemoryLog, new_entry
from ..memory.topics import extract_topics
from ..memory.trends import SentimentTrendTracker, SynchronyTracker
from ..utils.datetime import epoch_now
from ..utils.numeric_utils import clamp
from .fallbacks import FallbackTable
from .types import FinalReply, OutcomeKind, TurnContext, TurnResult

logger = logging.getLogger("companion.conversation.finalizer")


def _cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled


class TurnResultFinalizer:
    def __init__(
        self,
        memory_log: MemoryLog,
        trends: SentimentTrendTracker,
        synchrony: SynchronyTracker,
        bonds: BondTracker,
        analyzer: Optional[SentimentAnalyzer] = None,
        fallbacks: Optional[FallbackTable] = None,
        tuning: Optional[ShapingTuning] = None,
        telemetry: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = epoch_now,
    ):
        self.memory_log = memory_log
        self.trends = trends
        self.synchrony = synchrony
        self.bonds = bonds
        self.analyzer = analyzer or SentimentAnalyzer()
        self.fallbacks = fallbacks or FallbackTable()
        self.tuning = tuning or ShapingTuning()
        self.telemetry = telemetry
        self.clock = clock

    async def finalize(
        self,
        turn_result: TurnResult,
        shaped_text: Optional[str],
        context: TurnContext,
        cancel_token: Optional[CancellationToken] = None,
        interrupted: bool = False,
    ) -> FinalReply:
        text = shaped_text.strip() if isinstance(shaped_text, str) else ""
        if len(text) < self.tuning.min_reply_length:
            logger.warning(f"Reply too short after shaping ({len(text)} chars); using clarifying fallback")
            text = self.fallbacks.final

        committed = False
        if _cancelled(cancel_token):
            logger.info(f"Turn for {context.identity} superseded; skipping commit")
        elif turn_result.bypassed or turn_result.outcome.kind != OutcomeKind.OK:
            logger.debug(f"Nothing to commit for outcome {turn_result.outcome.kind.value}")
        else:
            try:
                committed = await self._commit(text, context)
            except Exception as e:
                logger.error(f"Commit failed for {context.identity}: {e}", exc_info=True)
                emit(self.telemetry, "commit_failed", identity=context.identity.key, step="prepare", error=str(e))

        return FinalReply(
            text=text,
            outcome=turn_result.outcome,
            committed=committed,
            interrupted=interrupted,
            turn_result=turn_result,
        )

    async def _commit(self, reply: str, context: TurnContext) -> bool:
        """
        Run every commit step, each isolated from the others.

        The cancel token is read once, before this is called; a turn that
        starts committing commits every step it can. Returns True only when
        all steps succeeded.
        """
        now = self.clock()
        identity = context.identity
        host = context.sentiment or self.analyzer.analyze(context.message)
        mirrored = self.analyzer.analyze(reply)

        tags: List[str] = list(dict.fromkeys(extract_topics(context.message) + extract_topics(reply)))[:5]
        thread_id = context.meta.conversation_id or f"thread_{int(now)}"

        steps = (
            ("memory", lambda: self._remember(context, reply, tags, thread_id, host, now)),
            ("trend", lambda: self.trends.record(identity, host, now)),
            ("bond", lambda: self._sync_and_bond(context, host, mirrored, now)),
        )
        ok = True
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                ok = False
                logger.error(f"Commit step '{name}' failed for {identity}: {e}", exc_info=True)
                emit(self.telemetry, "commit_failed", identity=identity.key, step=name, error=str(e))
        return ok

    async def _remember(self, context: TurnContext, reply: str, tags: List[str], thread_id: str,
                        host: SentimentReading, now: float) -> None:
        # Painful moments are only resurfaced once the bond is comfortable
        threshold = int(TrustTier.COMFORTABLE) if host.valence <= -0.5 else int(TrustTier.UNFAMILIAR)
        weight = clamp(0.3 + 0.4 * abs(host.valence) + 0.3 * host.warmth)
        await self.memory_log.add(
            context.identity,
            new_entry(context.message, reply, tags, thread_id, trust_threshold=threshold, weight=weight, now=now),
        )

    async def _sync_and_bond(self, context: TurnContext, host: SentimentReading,
                             mirrored: SentimentReading, now: float) -> None:
        score = await self.synchrony.update(context.identity, host, mirrored, now)
        await self.bonds.nudge(context.identity, warmth=host.warmth, synchrony=score, valence=host.valence)
