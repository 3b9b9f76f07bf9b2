"""Configuration package: environment-driven settings and tunable thresholds."""

from .app_config import AppConfig, get_app_config
from .thresholds import EmotionTuning, GuardrailThresholds, LoopDetectionTuning, ShapingTuning

__all__ = [
    "AppConfig",
    "get_app_config",
    "EmotionTuning",
    "GuardrailThresholds",
    "LoopDetectionTuning",
    "ShapingTuning",
]
