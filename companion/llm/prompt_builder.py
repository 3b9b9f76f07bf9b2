"""
Prompt Builder

Assembles the responder prompt from everything the enrichment stages learned
about this turn. Missing pieces are simply left out, so a prompt can always
be built even when every stage degraded.
"""

from typing import List, Optional

from ..conversation.types import TurnContext

HOST_LABEL = "Host"
SYNTH_LABEL = "Synth"


def _guardrail_lines(context: TurnContext) -> List[str]:
    decision = context.guardrails
    if decision is None:
        return []
    lines = []
    if not decision.allow_vulnerable_tone:
        lines.append("Keep personal feelings light; do not overshare.")
    if not decision.allow_high_intensity_joy:
        lines.append("Keep enthusiasm gentle rather than exuberant.")
    if decision.allow_playful_conflict:
        lines.append("Light, playful disagreement is welcome.")
    else:
        lines.append("Avoid teasing or playful disagreement.")
    if decision.max_response_length_factor < 1.0:
        lines.append("Keep the reply brief.")
    return lines


def build_prompt(context: TurnContext, persona_name: str = "Synth", history: Optional[List[str]] = None) -> str:
    """
    Args:
        context: The enriched turn context
        persona_name: Name the synth goes by
        history: Optional recent host lines (oldest first), defaults to the context's

    Returns:
        Prompt text ending with the synth's speaker label
    """
    sections: List[str] = [
        f"You are {persona_name}, a companion talking with your host. "
        f"Reply in plain conversational sentences as {persona_name}."
    ]

    state: List[str] = []
    if context.tone:
        state.append(f"tone: {context.tone}")
    if context.emotional_climate is not None:
        state.append(f"emotional weather: {context.emotional_climate.weather.value.lower()}")
    if context.vulnerability_mode:
        state.append(f"vulnerability: {context.vulnerability_mode}")
    if context.meta.presence_mode:
        state.append("presence mode: on")
    if state:
        sections.append("Current state: " + "; ".join(state) + ".")

    rules = _guardrail_lines(context)
    if rules:
        sections.append("Guidance:\n" + "\n".join(f"- {r}" for r in rules))

    if context.memory_context is not None and not context.memory_context.is_empty:
        sections.append(
            "Things you remember:\n" + "\n".join(f"- {line}" for line in context.memory_context.summary_lines())
        )

    lines = history if history is not None else context.recent_host_messages
    transcript = [f"{HOST_LABEL}: {line}" for line in lines[-4:] if line]
    transcript.append(f"{HOST_LABEL}: {context.message}")
    transcript.append(f"{SYNTH_LABEL}:")
    sections.append("\n".join(transcript))

    return "\n\n".join(sections)
