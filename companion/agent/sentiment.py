"""
Sentiment Analysis

Lexicon-based reading of a host message along four axes: valence (-1..1),
activation, warmth and tension (0..1). Pure and deterministic; the
orchestrator runs it behind a stage adapter and substitutes
``SentimentReading.neutral()`` on failure.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..utils.numeric_utils import clamp
from ..utils.text_utils import tokenize

logger = logging.getLogger("companion.agent.sentiment")

# word -> (valence, activation, warmth, tension)
LEXICON: Dict[str, Tuple[float, float, float, float]] = {
    # positive, warm
    "love": (0.9, 0.6, 0.9, 0.0),
    "loved": (0.8, 0.5, 0.8, 0.0),
    "adore": (0.9, 0.6, 0.9, 0.0),
    "thanks": (0.6, 0.3, 0.7, 0.0),
    "thank": (0.6, 0.3, 0.7, 0.0),
    "grateful": (0.7, 0.3, 0.8, 0.0),
    "miss": (0.2, 0.4, 0.8, 0.3),
    "hug": (0.7, 0.4, 0.9, 0.0),
    "sweet": (0.6, 0.3, 0.7, 0.0),
    "kind": (0.6, 0.2, 0.7, 0.0),
    "care": (0.5, 0.3, 0.8, 0.1),
    "friend": (0.5, 0.3, 0.7, 0.0),
    # positive, energetic
    "happy": (0.8, 0.6, 0.5, 0.0),
    "glad": (0.7, 0.4, 0.5, 0.0),
    "great": (0.7, 0.6, 0.3, 0.0),
    "good": (0.5, 0.3, 0.3, 0.0),
    "nice": (0.5, 0.3, 0.4, 0.0),
    "awesome": (0.8, 0.8, 0.3, 0.0),
    "amazing": (0.9, 0.8, 0.3, 0.0),
    "excited": (0.8, 0.9, 0.3, 0.1),
    "fun": (0.7, 0.7, 0.4, 0.0),
    "funny": (0.6, 0.6, 0.4, 0.0),
    "wonderful": (0.9, 0.6, 0.5, 0.0),
    "beautiful": (0.8, 0.4, 0.5, 0.0),
    "calm": (0.4, 0.1, 0.3, 0.0),
    "relaxed": (0.5, 0.1, 0.3, 0.0),
    "fine": (0.2, 0.2, 0.1, 0.0),
    "okay": (0.1, 0.2, 0.1, 0.0),
    "ok": (0.1, 0.2, 0.1, 0.0),
    "haha": (0.6, 0.7, 0.4, 0.0),
    "lol": (0.5, 0.6, 0.4, 0.0),
    # negative, low energy
    "sad": (-0.7, 0.3, 0.2, 0.4),
    "lonely": (-0.7, 0.2, 0.4, 0.5),
    "tired": (-0.4, 0.1, 0.0, 0.3),
    "exhausted": (-0.6, 0.1, 0.0, 0.5),
    "bored": (-0.3, 0.1, 0.0, 0.1),
    "hurt": (-0.7, 0.5, 0.1, 0.6),
    "cry": (-0.7, 0.5, 0.2, 0.6),
    "crying": (-0.7, 0.5, 0.2, 0.6),
    "depressed": (-0.8, 0.2, 0.1, 0.6),
    "sorry": (-0.2, 0.3, 0.4, 0.3),
    "bad": (-0.5, 0.4, 0.0, 0.3),
    "awful": (-0.8, 0.5, 0.0, 0.5),
    "terrible": (-0.8, 0.6, 0.0, 0.5),
    # negative, tense
    "angry": (-0.7, 0.9, 0.0, 0.9),
    "mad": (-0.6, 0.8, 0.0, 0.8),
    "hate": (-0.9, 0.8, 0.0, 0.8),
    "annoyed": (-0.5, 0.6, 0.0, 0.6),
    "frustrated": (-0.6, 0.7, 0.0, 0.8),
    "stressed": (-0.6, 0.7, 0.0, 0.9),
    "anxious": (-0.6, 0.7, 0.1, 0.9),
    "worried": (-0.5, 0.6, 0.2, 0.8),
    "scared": (-0.7, 0.8, 0.1, 0.9),
    "afraid": (-0.7, 0.7, 0.1, 0.9),
    "nervous": (-0.4, 0.7, 0.1, 0.8),
    "upset": (-0.6, 0.6, 0.0, 0.7),
    "overwhelmed": (-0.6, 0.7, 0.0, 0.9),
    "panic": (-0.8, 0.9, 0.0, 1.0),
    "ugh": (-0.4, 0.5, 0.0, 0.5),
}

NEGATORS = frozenset({"not", "no", "never", "don't", "dont", "isn't", "wasn't", "can't", "cannot", "hardly", "nothing"})
INTENSIFIERS = {"very": 1.5, "so": 1.4, "really": 1.4, "extremely": 1.8, "super": 1.5, "too": 1.3, "totally": 1.5}

# How far a negator or intensifier reaches forward
_MODIFIER_REACH = 2
# Weight of the current message against the recent host messages
_CURRENT_WEIGHT = 0.75


@dataclass(frozen=True)
class SentimentReading:
    valence: float
    activation: float
    warmth: float
    tension: float

    @classmethod
    def neutral(cls) -> "SentimentReading":
        return cls(valence=0.0, activation=0.3, warmth=0.3, tension=0.0)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class SentimentAnalyzer:
    """Scores text with ``LEXICON``, honouring negation, intensifiers and punctuation."""

    def __init__(self, lexicon: Optional[Dict[str, Tuple[float, float, float, float]]] = None, history_size: int = 3):
        self.lexicon = lexicon or LEXICON
        self.history_size = history_size

    def analyze(self, message: str, recent_host_messages: Optional[Sequence[str]] = None) -> SentimentReading:
        """
        Read ``message``, blended with up to ``history_size`` recent host
        messages so one flat line after an upset doesn't read as neutral.
        """
        current = self._score(message)
        recent = [m for m in (recent_host_messages or [])[-self.history_size:] if m]
        if not recent:
            return current

        past = [self._score(m) for m in recent]
        w = _CURRENT_WEIGHT
        return SentimentReading(
            valence=clamp(w * current.valence + (1 - w) * _mean(p.valence for p in past), -1.0, 1.0),
            activation=clamp(w * current.activation + (1 - w) * _mean(p.activation for p in past)),
            warmth=clamp(w * current.warmth + (1 - w) * _mean(p.warmth for p in past)),
            tension=clamp(w * current.tension + (1 - w) * _mean(p.tension for p in past)),
        )

    def _score(self, text: str) -> SentimentReading:
        tokens = tokenize(text)
        if not tokens:
            return SentimentReading.neutral()

        hits: List[Tuple[float, float, float, float]] = []
        for idx, token in enumerate(tokens):
            entry = self.lexicon.get(token)
            if entry is None:
                continue
            valence, activation, warmth, tension = entry
            window = tokens[max(0, idx - _MODIFIER_REACH):idx]
            boost = 1.0
            for prior in window:
                boost = max(boost, INTENSIFIERS.get(prior, 1.0))
            if any(prior in NEGATORS for prior in window):
                # "not happy" is mildly negative rather than sad
                valence = -0.5 * valence
                warmth = 0.3 * warmth
                tension = tension * 0.5 if entry[0] < 0 else max(tension, 0.2)
            hits.append((valence * boost, activation * boost, warmth, tension * boost))

        exclamations = text.count("!")
        letters = [c for c in text if c.isalpha()]
        caps_ratio = (sum(1 for c in letters if c.isupper()) / len(letters)) if len(letters) >= 8 else 0.0
        arousal_bonus = min(exclamations * 0.1, 0.3) + (0.2 if caps_ratio > 0.6 else 0.0)

        if not hits:
            neutral = SentimentReading.neutral()
            return SentimentReading(
                valence=0.0,
                activation=clamp(neutral.activation + arousal_bonus),
                warmth=neutral.warmth,
                tension=clamp(neutral.tension + (0.1 if caps_ratio > 0.6 else 0.0)),
            )

        return SentimentReading(
            valence=clamp(sum(h[0] for h in hits) / len(hits), -1.0, 1.0),
            activation=clamp(_mean(h[1] for h in hits) + arousal_bonus),
            warmth=clamp(_mean(h[2] for h in hits)),
            tension=clamp(_mean(h[3] for h in hits)),
        )


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0
