"""
Guardrail Evaluation

Decides per turn which tonal behaviours are permitted and how long the reply
may run. Pure: the same inputs always give the same decision, and every
threshold comes from ``GuardrailThresholds``.

Lowering trust can never enable a behaviour. When the climate or the bond is
unknown the most restrictive decision is returned.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from ..config.thresholds import GuardrailThresholds
from ..utils.numeric_utils import clamp
from .emotional_state import EmotionalClimate, Weather

VULNERABILITY_OPEN = "open"
VULNERABILITY_SOFT = "soft"
VULNERABILITY_GUARDED = "guarded"


@dataclass(frozen=True)
class GuardrailDecision:
    allow_vulnerable_tone: bool
    allow_high_intensity_joy: bool
    allow_playful_conflict: bool
    max_response_length_factor: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _presence_on(mode: Union[str, bool, None]) -> bool:
    if isinstance(mode, str):
        return mode.strip().lower() in ("on", "true", "presence")
    return bool(mode)


class GuardrailEvaluator:
    def __init__(self, thresholds: Optional[GuardrailThresholds] = None):
        self.thresholds = thresholds or GuardrailThresholds()

    def restrictive(self) -> GuardrailDecision:
        return GuardrailDecision(
            allow_vulnerable_tone=False,
            allow_high_intensity_joy=False,
            allow_playful_conflict=False,
            max_response_length_factor=self.thresholds.restrictive_length_factor,
        )

    def evaluate(
        self,
        climate: Optional[EmotionalClimate],
        trust: Optional[float],
        affection: Optional[float],
        mode: Union[str, bool, None] = "off",
        demo_mode: bool = False,
        exhaustion_mode: bool = False,
    ) -> GuardrailDecision:
        """
        Args:
            climate: Current emotional climate (None when unavailable)
            trust: Bond trust in [0, 1] (None when unavailable)
            affection: Bond affection in [0, 1] (None when unavailable)
            mode: Presence mode, "on" or "off"
            demo_mode: Demo sessions never get a vulnerable tone
            exhaustion_mode: Shortens replies
        """
        if climate is None or trust is None or affection is None:
            return self.restrictive()

        t = self.thresholds
        storm = climate.weather == Weather.STORM
        presence = _presence_on(mode)

        allow_vulnerable = trust >= t.vulnerable_trust_min and not storm and not demo_mode
        allow_joy = climate.stability_score >= t.joy_stability_min
        allow_playful = (
            trust >= t.playful_trust_min
            and affection >= t.playful_affection_min
            and not storm
            and not presence
        )

        factor = 1.0
        if exhaustion_mode:
            factor *= t.exhaustion_length_factor
        if storm:
            factor *= t.storm_length_factor
        if presence:
            factor *= t.presence_length_factor

        return GuardrailDecision(
            allow_vulnerable_tone=allow_vulnerable,
            allow_high_intensity_joy=allow_joy,
            allow_playful_conflict=allow_playful,
            max_response_length_factor=clamp(factor, t.min_length_factor, 1.0),
        )

    def decide_vulnerability_mode(self, decision: GuardrailDecision, tier: Optional[int]) -> str:
        """Prompt tag for how much of itself the synth may show this turn."""
        if not decision.allow_vulnerable_tone or tier is None:
            return VULNERABILITY_GUARDED
        if tier >= self.thresholds.open_vulnerability_tier:
            return VULNERABILITY_OPEN
        return VULNERABILITY_SOFT
