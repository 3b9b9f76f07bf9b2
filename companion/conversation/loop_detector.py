"""
Loop Interruption

Watches recent replies for repetition: the same topic coming up again and
again, or near-identical wording. When a loop is found the reply is swapped
for a gentle change of subject. Substitutes pass through
``suppress_meta_narration`` so the synth never talks about its own looping.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Callable, Deque, List, Optional, Sequence

from ..config.thresholds import LoopDetectionTuning
from ..utils.datetime import epoch_now
from ..utils.text_utils import normalize_for_comparison, split_sentences

logger = logging.getLogger("companion.conversation.loop_detector")

INTERRUPTIONS = (
    "I feel like we're going in circles. Let's try something new. What's been on your mind lately?",
    "Let's take a little detour. Tell me about something that made you smile this week?",
    "I keep repeating myself, sorry. What would you like to talk about instead?",
    "Okay, new direction. What's something you're looking forward to?",
)

NEUTRAL_REDIRECT = "Let's switch gears for a moment. What would you like to talk about?"

META_NARRATION_PATTERNS = (
    re.compile(r"\bI\s+keep\s+(?:repeating|saying|coming back)", re.IGNORECASE),
    re.compile(r"\bI(?:'m| am)\s+(?:looping|stuck in a loop|repeating)", re.IGNORECASE),
    re.compile(r"\bgoing\s+(?:around\s+)?in\s+circles\b", re.IGNORECASE),
    re.compile(r"\becho(?:ing|es|ed)?\b", re.IGNORECASE),
    re.compile(r"\b(?:broken record|on repeat)\b", re.IGNORECASE),
)

# Filtered substitutes shorter than this are not worth sending
_MIN_USABLE = 10


def suppress_meta_narration(text: str) -> str:
    """
    Remove sentences in which the speaker narrates its own repetition.

    Examples:
        >>> suppress_meta_narration("I keep repeating myself. What else is new?")
        'What else is new?'
    """
    kept = [s for s in split_sentences(text) if not any(p.search(s) for p in META_NARRATION_PATTERNS)]
    return " ".join(kept).strip()


def interruption_reply(phrase: str) -> str:
    filtered = suppress_meta_narration(phrase)
    return filtered if len(filtered) >= _MIN_USABLE else NEUTRAL_REDIRECT


@dataclass(frozen=True)
class _Recorded:
    text: str
    topic: Optional[str]
    timestamp: float


class LoopInterruptionDetector:
    """
    One detector per identity. ``add_response`` records the reply, then
    ``check_for_loop`` on the same reply decides; the just-recorded reply
    therefore counts toward its own repeat total.
    """

    def __init__(
        self,
        tuning: Optional[LoopDetectionTuning] = None,
        clock: Callable[[], float] = epoch_now,
        phrases: Sequence[str] = INTERRUPTIONS,
    ):
        self.tuning = tuning or LoopDetectionTuning()
        self.clock = clock
        self.phrases = tuple(phrases) or (NEUTRAL_REDIRECT,)
        self._history: Deque[_Recorded] = deque(maxlen=self.tuning.history_size)
        self._next_phrase = 0

    def add_response(self, text: str, topic: Optional[str] = None, now: Optional[float] = None) -> None:
        now = self.clock() if now is None else now
        self._history.append(_Recorded(normalize_for_comparison(text), topic, now))

    def _recent(self, now: float) -> List[_Recorded]:
        return [r for r in self._history if now - r.timestamp <= self.tuning.window_seconds]

    def check_for_loop(self, text: str, topic: Optional[str] = None, now: Optional[float] = None) -> Optional[str]:
        """Return an interruption phrase if a loop is detected, otherwise None."""
        now = self.clock() if now is None else now
        recent = self._recent(now)

        if topic is not None:
            topic_hits = sum(1 for r in recent if r.topic == topic)
            if topic_hits >= self.tuning.topic_repeat_threshold:
                logger.info(f"Topic loop on {topic!r}: {topic_hits} hits in window")
                return self._pick()

        candidate = normalize_for_comparison(text)
        if candidate:
            similar = sum(
                1 for r in recent
                if r.text and SequenceMatcher(None, r.text, candidate).ratio() >= self.tuning.similarity_threshold
            )
            if similar >= self.tuning.text_repeat_threshold:
                logger.info(f"Wording loop: {similar} similar replies in window")
                return self._pick()
        return None

    def _pick(self) -> str:
        phrase = self.phrases[self._next_phrase % len(self.phrases)]
        self._next_phrase += 1
        return phrase

    def reset(self) -> None:
        self._history.clear()

    def __len__(self) -> int:
        return len(self._history)
