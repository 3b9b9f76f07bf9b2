"""
Turn Orchestrator

The spine of a conversation turn:

    mode gate → sentiment → emotional ingest ∥ memory context
    → climate ∥ bond → guardrails → responder (→ local fallback) → refine

Every enrichment stage runs through a ``StageAdapter`` with a short deadline
and a neutral default, so a turn degrades instead of failing. Only the
responder call has a hard timeout; its failures map to softened fallback
lines with a TIMEOUT / FALLBACK_MESSAGE outcome. ``run_turn`` never raises
(task cancellation excepted) and always returns non-empty text.
"""

import asyncio
import logging
from typing import Callable, Optional, Tuple

from ..agent.bonding import BondTracker
from ..agent.emotional_state import EmotionalSnapshot, EmotionalStateManager
from ..agent.guardrails import GuardrailDecision, GuardrailEvaluator
from ..agent.sentiment import SentimentAnalyzer, SentimentReading
from ..core import capabilities as stages
from ..core.capabilities import StageRegistry
from ..core.system_mode import SystemMode, advisory_for
from ..core.tasks import CancellationToken
from ..core.telemetry import TelemetrySink, emit
from ..llm.prompt_builder import build_prompt
from ..llm.responders import GenerationConfig, Responder, ResponderError, ResponderTimeout
from ..memory.context_builder import MemoryContext, MemoryContextBuilder
from ..utils.datetime import epoch_now
from ..utils.logging_config import get_correlation_id, set_correlation_id
from . import fallbacks as fb
from .fallbacks import FallbackTable
from .types import OutcomeKind, TurnContext, TurnOutcome, TurnResult

logger = logging.getLogger("companion.conversation.orchestrator")

MODE_GATE_ENGINE = "mode_gate"
FALLBACK_ENGINE = "fallback"


def build_stage_registry(timeout: Optional[float] = 1.5, telemetry: Optional[TelemetrySink] = None) -> StageRegistry:
    """Registry with the neutral default for every enrichment stage."""
    registry = StageRegistry(timeout=timeout, telemetry=telemetry)
    registry.register(stages.SENTIMENT, SentimentReading.neutral)
    registry.register(stages.EMOTIONAL_INGEST, lambda: None)
    registry.register(stages.MEMORY_CONTEXT, MemoryContext.empty)
    registry.register(stages.CLIMATE, lambda: None)
    registry.register(stages.BOND, lambda: None)
    registry.register(stages.REFINE, lambda: None)
    return registry


class TurnOrchestrator:
    def __init__(
        self,
        *,
        mode_provider: Callable[[], SystemMode],
        emotions: EmotionalStateManager,
        memory: MemoryContextBuilder,
        bonds: BondTracker,
        responder: Responder,
        local_responder: Optional[Responder] = None,
        analyzer: Optional[SentimentAnalyzer] = None,
        guardrails: Optional[GuardrailEvaluator] = None,
        fallbacks: Optional[FallbackTable] = None,
        registry: Optional[StageRegistry] = None,
        generation: Optional[GenerationConfig] = None,
        responder_timeout: float = 8.0,
        local_timeout: float = 6.0,
        stage_timeout: float = 1.5,
        persona_name: str = "Synth",
        telemetry: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = epoch_now,
    ):
        self.mode_provider = mode_provider
        self.emotions = emotions
        self.memory = memory
        self.bonds = bonds
        self.responder = responder
        self.local_responder = local_responder
        self.analyzer = analyzer or SentimentAnalyzer()
        self.guardrails = guardrails or GuardrailEvaluator()
        self.fallbacks = fallbacks or FallbackTable()
        self.registry = registry or build_stage_registry(stage_timeout, telemetry)
        self.generation = generation or GenerationConfig()
        self.responder_timeout = responder_timeout
        self.local_timeout = local_timeout
        self.stage_timeout = stage_timeout
        self.persona_name = persona_name
        self.telemetry = telemetry
        self.clock = clock

    async def run_turn(self, context: TurnContext, cancel_token: Optional[CancellationToken] = None) -> TurnResult:
        if get_correlation_id() is None:
            set_correlation_id()

        try:
            mode = SystemMode(self.mode_provider())
        except Exception as e:
            logger.error(f"Mode provider failed, assuming normal mode: {e}", exc_info=True)
            mode = SystemMode.NORMAL

        if mode != SystemMode.NORMAL:
            logger.info(f"Turn for {context.identity} gated by mode {mode.value}")
            emit(self.telemetry, "mode_gated", identity=context.identity.key, mode=mode.value)
            return TurnResult(
                text=advisory_for(mode),
                outcome=TurnOutcome(OutcomeKind.OK, MODE_GATE_ENGINE),
                bypassed=True,
            )

        try:
            return await self._run(context, cancel_token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Turn pipeline failed for {context.identity}: {e}", exc_info=True)
            emit(self.telemetry, "turn_failed", identity=context.identity.key, error=f"{type(e).__name__}: {e}")
            return TurnResult(
                text=self.fallbacks.message(fb.INTERNAL_ERROR, context.meta.presence_mode),
                outcome=TurnOutcome(OutcomeKind.ERROR, FALLBACK_ENGINE, fb.INTERNAL_ERROR),
                tone_applied=context.tone,
                guardrails=context.guardrails,
            )

    async def _run(self, context: TurnContext, cancel_token: Optional[CancellationToken]) -> TurnResult:
        identity = context.identity
        now = self.clock()

        sentiment = await self.registry.adapter(stages.SENTIMENT).run(
            self.analyzer.analyze, context.message, context.recent_host_messages
        )
        context.sentiment = sentiment.value

        ingest, memory = await asyncio.gather(
            self.registry.adapter(stages.EMOTIONAL_INGEST).run(
                self.emotions.ingest, identity, context.message, sentiment_hint=context.sentiment, now=now
            ),
            self.registry.adapter(stages.MEMORY_CONTEXT).run(self.memory.build, identity, context.message, now=now),
        )
        snapshot = ingest.value if ingest.value is not None else await self._previous_snapshot(context, now)
        context.emotional_snapshot = snapshot
        context.memory_context = memory.value
        context.tone = context.tone or snapshot.tone

        climate, bond = await asyncio.gather(
            self.registry.adapter(stages.CLIMATE).run(self.emotions.get_climate, identity),
            self.registry.adapter(stages.BOND).run(self.bonds.get, identity),
        )
        context.emotional_climate = climate.value
        if bond.value is not None:
            context.trust = bond.value.trust
            context.affection = bond.value.affection
            context.bond_tier = int(bond.value.tier)
        context.degraded_stages = [
            o.stage for o in (sentiment, ingest, memory, climate, bond) if o.degraded
        ]

        decision = self._evaluate_guardrails(context)
        context.guardrails = decision
        context.vulnerability_mode = self.guardrails.decide_vulnerability_mode(decision, context.bond_tier)

        prompt = build_prompt(context, persona_name=self.persona_name)
        config = self.generation.scaled(decision.max_response_length_factor)
        text, outcome, intents = await self._respond(prompt, config, context)

        if outcome.kind == OutcomeKind.OK:
            if cancel_token is not None and cancel_token.cancelled:
                logger.debug(f"Skipping refine for superseded turn of {identity}")
            else:
                await self.registry.adapter(stages.REFINE).run(
                    self.emotions.ingest, identity, context.message, reply=text,
                    sentiment_hint=context.sentiment, now=self.clock(),
                )

        return TurnResult(
            text=text,
            outcome=outcome,
            tone_applied=context.tone,
            traits_applied=tuple(snapshot.tags),
            pending_tool_intents=intents,
            guardrails=decision,
        )

    async def _previous_snapshot(self, context: TurnContext, now: float) -> EmotionalSnapshot:
        try:
            stored = await asyncio.wait_for(self.emotions.get_snapshot(context.identity), timeout=self.stage_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"No previous snapshot for {context.identity}: {e}")
            stored = None
        return stored or EmotionalSnapshot.neutral(now)

    def _evaluate_guardrails(self, context: TurnContext) -> GuardrailDecision:
        meta = context.meta
        try:
            return self.guardrails.evaluate(
                context.emotional_climate,
                context.trust,
                context.affection,
                mode="on" if meta.presence_mode else "off",
                demo_mode=meta.demo_mode,
                exhaustion_mode=meta.exhaustion_mode,
            )
        except Exception as e:
            logger.warning(f"Guardrail evaluation failed, using restrictive decision: {e}")
            return self.guardrails.restrictive()

    async def _invoke(self, responder: Responder, prompt: str, config: GenerationConfig, timeout: float):
        """Returns (reply, failure_class); exactly one of them is None."""
        try:
            reply = await asyncio.wait_for(responder.invoke(prompt, config), timeout=timeout)
        except (asyncio.TimeoutError, ResponderTimeout):
            return None, fb.TIMEOUT
        except ResponderError as e:
            logger.warning(f"Responder {getattr(responder, 'name', '?')} failed: {e}")
            return None, fb.PROVIDER_ERROR
        if reply is None or not (reply.text or "").strip():
            return None, fb.EMPTY_REPLY
        return reply, None

    async def _respond(
        self, prompt: str, config: GenerationConfig, context: TurnContext
    ) -> Tuple[str, TurnOutcome, Tuple[str, ...]]:
        reply, failure = await self._invoke(self.responder, prompt, config, self.responder_timeout)
        if reply is not None:
            return reply.text.strip(), TurnOutcome(OutcomeKind.OK, reply.engine_used), tuple(reply.tool_intents)

        logger.warning(f"Primary responder failed for {context.identity}: {failure}")
        emit(self.telemetry, "responder_failed", identity=context.identity.key, path="primary", failure_class=failure)

        if context.meta.allow_local_fallback and self.local_responder is not None:
            local, local_failure = await self._invoke(self.local_responder, prompt, config, self.local_timeout)
            if local is not None:
                logger.info(f"Local responder answered for {context.identity}")
                return local.text.strip(), TurnOutcome(OutcomeKind.OK, local.engine_used), tuple(local.tool_intents)
            logger.warning(f"Local responder also failed for {context.identity}: {local_failure}")
            emit(self.telemetry, "responder_failed", identity=context.identity.key, path="local", failure_class=local_failure)
            failure = fb.BOTH_FAILURE

        kind = OutcomeKind.TIMEOUT if failure == fb.TIMEOUT else OutcomeKind.FALLBACK_MESSAGE
        text = self.fallbacks.message(failure, context.meta.presence_mode)
        return text, TurnOutcome(kind, FALLBACK_ENGINE, failure), ()
