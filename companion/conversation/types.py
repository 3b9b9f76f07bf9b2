"""Shared per-turn data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from ..agent.emotional_state import EmotionalClimate, EmotionalSnapshot
    from ..agent.guardrails import GuardrailDecision
    from ..agent.sentiment import SentimentReading
    from ..memory.context_builder import MemoryContext
    from .ux_policy import UXPolicy


@dataclass(frozen=True)
class IdentityKey:
    """One synth talking to one host. Every piece of durable state is keyed by it."""
    synth_id: str
    host_id: str

    @property
    def key(self) -> str:
        return f"{self.synth_id}:{self.host_id}"

    @classmethod
    def parse(cls, key: str) -> "IdentityKey":
        synth_id, sep, host_id = key.partition(":")
        if not sep or not synth_id or not host_id:
            raise ValueError(f"Invalid identity key: {key!r}")
        return cls(synth_id, host_id)

    def __str__(self) -> str:
        return self.key


class OutcomeKind(str, Enum):
    OK = "OK"
    FALLBACK_MESSAGE = "FALLBACK_MESSAGE"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


@dataclass(frozen=True)
class TurnOutcome:
    kind: OutcomeKind
    engine_used: str
    failure_class: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "engine_used": self.engine_used, "failure_class": self.failure_class}


@dataclass
class TurnMeta:
    platform: str = "desktop"
    ux_policy: Optional["UXPolicy"] = None
    conversation_id: Optional[str] = None
    presence_mode: bool = False
    allow_local_fallback: bool = True
    demo_mode: bool = False
    exhaustion_mode: bool = False


@dataclass
class TurnContext:
    """Mutable bag for one turn; only the orchestrator writes to it."""
    identity: IdentityKey
    message: str
    meta: TurnMeta = field(default_factory=TurnMeta)
    recent_host_messages: List[str] = field(default_factory=list)
    sentiment: Optional["SentimentReading"] = None
    tone: Optional[str] = None
    emotional_snapshot: Optional["EmotionalSnapshot"] = None
    emotional_climate: Optional["EmotionalClimate"] = None
    memory_context: Optional["MemoryContext"] = None
    traits_snapshot: Optional[Dict[str, float]] = None
    guardrails: Optional["GuardrailDecision"] = None
    vulnerability_mode: Optional[str] = None
    trust: Optional[float] = None
    affection: Optional[float] = None
    bond_tier: Optional[int] = None
    degraded_stages: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TurnResult:
    text: str
    outcome: TurnOutcome
    tone_applied: Optional[str] = None
    traits_applied: Tuple[str, ...] = ()
    pending_tool_intents: Tuple[str, ...] = ()
    tool_results: Tuple[Dict[str, Any], ...] = ()
    guardrails: Optional["GuardrailDecision"] = None
    bypassed: bool = False

    def __post_init__(self):
        if not self.text or not self.text.strip():
            raise ValueError("TurnResult.text must not be empty")


@dataclass(frozen=True)
class FinalReply:
    text: str
    outcome: TurnOutcome
    committed: bool
    interrupted: bool
    turn_result: TurnResult

    def to_dict(self) -> Dict[str, Any]:
        guardrails = self.turn_result.guardrails
        return {
            "text": self.text,
            "outcome": self.outcome.to_dict(),
            "committed": self.committed,
            "interrupted": self.interrupted,
            "bypassed": self.turn_result.bypassed,
            "tone_applied": self.turn_result.tone_applied,
            "pending_tool_intents": list(self.turn_result.pending_tool_intents),
            "guardrails": guardrails.to_dict() if guardrails else None,
        }
