"""
Centralized configuration for behavioural thresholds and tuning constants.

Every threshold used by the guardrails, the emotional state manager, the
loop detector and the reply shaper lives here so it can be overridden from
the environment (or an explicit mapping) without touching code. Each group
reads ``<PREFIX><FIELD_NAME>`` from the environment, e.g.
``GUARDRAIL_VULNERABLE_TRUST_MIN=0.7``.
"""

import os
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, ClassVar, Dict, Mapping, Optional


class _EnvTunable:
    """Shared loading/validation helpers for the tuning dataclasses."""

    ENV_PREFIX: ClassVar[str] = ""
    UNIT_FIELDS: ClassVar[tuple] = ()
    POSITIVE_FIELDS: ClassVar[tuple] = ()

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None):
        """Build an instance from environment variables, falling back to defaults."""
        env = os.environ if env is None else env
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f"{cls.ENV_PREFIX}{f.name.upper()}")
            if raw is None or raw == "":
                continue
            caster = type(f.default)
            try:
                values[f.name] = caster(raw)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{cls.ENV_PREFIX}{f.name.upper()}={raw!r} is not a valid {caster.__name__}") from exc
        instance = cls(**values)
        instance.validate()
        return instance

    def with_overrides(self, **overrides: Any):
        """Return a validated copy with the given fields replaced."""
        updated = replace(self, **overrides)
        updated.validate()
        return updated

    def to_dict(self) -> Dict[str, Any]:
        """Export all values as a dictionary for inspection."""
        return asdict(self)

    def validate(self) -> bool:
        """Validate that values are within sensible ranges."""
        errors = []
        for name in self.UNIT_FIELDS:
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name}={value} is outside valid range [0.0, 1.0]")
        for name in self.POSITIVE_FIELDS:
            value = getattr(self, name)
            if value <= 0:
                errors.append(f"{name}={value} must be > 0")
        errors.extend(self._extra_errors())
        if errors:
            raise ValueError(f"{type(self).__name__} validation failed:\n" + "\n".join(errors))
        return True

    def _extra_errors(self):
        return []


@dataclass(frozen=True)
class GuardrailThresholds(_EnvTunable):
    """Permission thresholds for tone and reply length."""

    ENV_PREFIX: ClassVar[str] = "GUARDRAIL_"
    UNIT_FIELDS: ClassVar[tuple] = (
        "vulnerable_trust_min", "joy_stability_min", "playful_trust_min",
        "playful_affection_min", "exhaustion_length_factor", "storm_length_factor",
        "presence_length_factor", "restrictive_length_factor", "min_length_factor",
    )

    vulnerable_trust_min: float = 0.6
    """Minimum trust before a vulnerable tone is allowed"""

    joy_stability_min: float = 0.4
    """High-intensity joy is suppressed below this climate stability"""

    playful_trust_min: float = 0.5
    playful_affection_min: float = 0.5

    exhaustion_length_factor: float = 0.6
    storm_length_factor: float = 0.7
    presence_length_factor: float = 0.8

    restrictive_length_factor: float = 0.5
    """Length factor applied when guardrail inputs are missing"""

    min_length_factor: float = 0.25

    # Trust tier needed before the vulnerability mode opens fully
    open_vulnerability_tier: int = 3


@dataclass(frozen=True)
class EmotionTuning(_EnvTunable):
    """Blend, dwell and climate constants for the emotional state manager."""

    ENV_PREFIX: ClassVar[str] = "EMOTION_"
    UNIT_FIELDS: ClassVar[tuple] = (
        "blend_new_weight", "stable_band", "unsettled_band", "valence_band", "decay_rate",
    )
    POSITIVE_FIELDS: ClassVar[tuple] = ("history_capacity", "short_window", "mid_window")

    blend_new_weight: float = 0.3
    """Share of the freshly computed mood in the blend (the rest is the previous snapshot)"""

    min_dwell_seconds: float = 300.0
    """A dominant mood must hold this long before it may change"""

    history_capacity: int = 50
    short_window: int = 5
    mid_window: int = 20

    stable_band: float = 0.85
    unsettled_band: float = 0.6
    valence_band: float = 0.15
    """Short-term valence inside +/- this band counts as neutral for weather"""

    decay_after_seconds: float = 600.0
    decay_rate: float = 0.2

    def _extra_errors(self):
        errors = []
        if self.min_dwell_seconds < 0:
            errors.append(f"min_dwell_seconds={self.min_dwell_seconds} must be >= 0")
        if self.short_window > self.mid_window:
            errors.append(f"short_window ({self.short_window}) must be <= mid_window ({self.mid_window})")
        if self.mid_window > self.history_capacity:
            errors.append(f"mid_window ({self.mid_window}) must be <= history_capacity ({self.history_capacity})")
        if self.unsettled_band > self.stable_band:
            errors.append("unsettled_band must be <= stable_band")
        return errors


@dataclass(frozen=True)
class LoopDetectionTuning(_EnvTunable):
    """Repetition thresholds for the loop interruption detector."""

    ENV_PREFIX: ClassVar[str] = "LOOP_"
    UNIT_FIELDS: ClassVar[tuple] = ("similarity_threshold",)
    POSITIVE_FIELDS: ClassVar[tuple] = (
        "history_size", "window_seconds", "topic_repeat_threshold", "text_repeat_threshold",
    )

    history_size: int = 12
    window_seconds: float = 300.0
    topic_repeat_threshold: int = 3
    text_repeat_threshold: int = 2
    similarity_threshold: float = 0.85


@dataclass(frozen=True)
class ShapingTuning(_EnvTunable):
    """Reply shaping and finalization limits."""

    ENV_PREFIX: ClassVar[str] = "SHAPING_"
    POSITIVE_FIELDS: ClassVar[tuple] = (
        "min_reply_length", "desktop_max_sentences", "mobile_max_sentences",
    )

    min_reply_length: int = 5
    desktop_max_sentences: int = 6
    mobile_max_sentences: int = 2
