"""
UX policy: how much structure a reply may carry on the host's platform.
"""

import re
from dataclasses import dataclass, replace
from typing import Optional

from ..config.thresholds import ShapingTuning

LONGFORM_PHRASES = (
    "in detail",
    "step by step",
    "explain thoroughly",
    "tell me everything",
    "long answer",
)

_LONGFORM_RE = re.compile("|".join(re.escape(p) for p in LONGFORM_PHRASES), re.IGNORECASE)

MOBILE_PLATFORMS = frozenset({"mobile", "ios", "android", "phone", "watch"})


@dataclass(frozen=True)
class UXPolicy:
    platform: str = "desktop"
    max_sentences: int = 6
    allow_paragraphs: bool = True
    allow_bullets: bool = True
    user_requested_longform: bool = False

    def scaled(self, factor: float) -> "UXPolicy":
        """Copy with the sentence cap scaled by a guardrail length factor (never below 1)."""
        return replace(self, max_sentences=max(1, int(round(self.max_sentences * factor))))


DEFAULT_DESKTOP_POLICY = UXPolicy()


def requests_longform(message: str) -> bool:
    return bool(_LONGFORM_RE.search(message or ""))


def build_ux_policy(platform: Optional[str], message: str = "", tuning: Optional[ShapingTuning] = None) -> UXPolicy:
    """
    Examples:
        >>> build_ux_policy("mobile", "hi").max_sentences
        2
        >>> build_ux_policy("desktop", "Explain it step by step").user_requested_longform
        True
    """
    tuning = tuning or ShapingTuning()
    name = (platform or "desktop").strip().lower()
    longform = requests_longform(message)
    if name in MOBILE_PLATFORMS:
        return UXPolicy(
            platform=name,
            max_sentences=tuning.mobile_max_sentences,
            allow_paragraphs=False,
            allow_bullets=False,
            user_requested_longform=longform,
        )
    return UXPolicy(
        platform=name,
        max_sentences=tuning.desktop_max_sentences,
        allow_paragraphs=True,
        allow_bullets=True,
        user_requested_longform=longform,
    )
