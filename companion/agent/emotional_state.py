"""
Emotional State Manager

Keeps one live ``EmotionalSnapshot`` per identity and derives the
``EmotionalClimate`` (a weather metaphor over recent mood history) that the
guardrails read.

Each ingestion scores raw mood intensities from the message, the reply and
the sentiment hint, blends them into the previous snapshot
(``blend_new_weight`` new, the rest old) and appends a point to a bounded
history. The dominant mood is sticky: it may only change once it has held for
``min_dwell_seconds``. Re-ingesting the exact same input at the same instant
is a no-op that returns the stored snapshot.

Turn-time writes are serialized per identity with an ``asyncio.Lock``.
``decay`` is meant for the maintenance task and never takes that lock: it
writes through compare-and-set and gives up if a turn got there first.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config.thresholds import EmotionTuning
from ..conversation.types import IdentityKey
from ..db.state_store import EMOTIONAL_STATE, StateStore
from ..utils.datetime import epoch_now
from ..utils.numeric_utils import clamp, ema, variance
from ..utils.text_utils import tokenize
from .sentiment import SentimentReading

logger = logging.getLogger("companion.agent.emotional_state")

NEUTRAL = "neutral"

# mood -> (valence, arousal)
MOOD_AXES: Dict[str, Tuple[float, float]] = {
    "joy": (0.8, 0.6),
    "affection": (0.7, 0.4),
    "calm": (0.4, 0.1),
    "curiosity": (0.3, 0.5),
    "sadness": (-0.7, 0.2),
    "anxiety": (-0.6, 0.8),
    "anger": (-0.8, 0.9),
}

MOOD_LEXICON: Dict[str, str] = {
    "happy": "joy", "glad": "joy", "yay": "joy", "excited": "joy", "awesome": "joy",
    "amazing": "joy", "haha": "joy", "lol": "joy", "fun": "joy", "great": "joy",
    "love": "affection", "miss": "affection", "hug": "affection", "dear": "affection",
    "sweet": "affection", "thanks": "affection", "grateful": "affection", "care": "affection",
    "calm": "calm", "relaxed": "calm", "peaceful": "calm", "quiet": "calm", "rest": "calm",
    "why": "curiosity", "how": "curiosity", "wonder": "curiosity", "curious": "curiosity",
    "interesting": "curiosity", "learn": "curiosity",
    "sad": "sadness", "lonely": "sadness", "cry": "sadness", "crying": "sadness",
    "tired": "sadness", "depressed": "sadness", "lost": "sadness", "miserable": "sadness",
    "anxious": "anxiety", "worried": "anxiety", "nervous": "anxiety", "scared": "anxiety",
    "afraid": "anxiety", "stressed": "anxiety", "overwhelmed": "anxiety", "panic": "anxiety",
    "angry": "anger", "mad": "anger", "hate": "anger", "furious": "anger", "annoyed": "anger",
    "frustrated": "anger",
}

TONES: Dict[str, str] = {
    "joy": "bright",
    "affection": "warm",
    "calm": "gentle",
    "curiosity": "inquisitive",
    "sadness": "soft",
    "anxiety": "reassuring",
    "anger": "steady",
    NEUTRAL: "neutral",
}

# Moods below this intensity do not count as dominant or as tags
_PRESENCE_FLOOR = 0.05
_TAG_FLOOR = 0.35


class Weather(str, Enum):
    CLEAR = "CLEAR"
    BRIGHT = "BRIGHT"
    CLOUDY = "CLOUDY"
    OVERCAST = "OVERCAST"
    RAIN = "RAIN"
    WINDY = "WINDY"
    FOG = "FOG"
    STORM = "STORM"


# (stability band, valence sign) -> weather
WEATHER_TABLE: Dict[Tuple[str, int], Weather] = {
    ("stable", 1): Weather.BRIGHT,
    ("stable", 0): Weather.CLEAR,
    ("stable", -1): Weather.OVERCAST,
    ("unsettled", 1): Weather.CLEAR,
    ("unsettled", 0): Weather.CLOUDY,
    ("unsettled", -1): Weather.RAIN,
    ("volatile", 1): Weather.WINDY,
    ("volatile", 0): Weather.FOG,
    ("volatile", -1): Weather.STORM,
}


@dataclass(frozen=True)
class MoodVector:
    valence: float = 0.0
    arousal: float = 0.3

    def to_dict(self) -> Dict[str, float]:
        return {"valence": self.valence, "arousal": self.arousal}


@dataclass(frozen=True)
class EmotionalSnapshot:
    dominant_mood: str
    intensities: Dict[str, float]
    tags: Tuple[str, ...]
    timestamp: float
    dominant_since: float
    valence: float = 0.0
    arousal: float = 0.3

    @classmethod
    def neutral(cls, now: float) -> "EmotionalSnapshot":
        return cls(
            dominant_mood=NEUTRAL,
            intensities={mood: 0.0 for mood in MOOD_AXES},
            tags=(),
            timestamp=now,
            dominant_since=now,
        )

    @property
    def tone(self) -> str:
        return TONES.get(self.dominant_mood, "neutral")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dominant_mood": self.dominant_mood,
            "intensities": dict(self.intensities),
            "tags": list(self.tags),
            "timestamp": self.timestamp,
            "dominant_since": self.dominant_since,
            "valence": self.valence,
            "arousal": self.arousal,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmotionalSnapshot":
        return cls(
            dominant_mood=data.get("dominant_mood", NEUTRAL),
            intensities={k: float(v) for k, v in (data.get("intensities") or {}).items()},
            tags=tuple(data.get("tags") or ()),
            timestamp=float(data["timestamp"]),
            dominant_since=float(data.get("dominant_since", data["timestamp"])),
            valence=float(data.get("valence", 0.0)),
            arousal=float(data.get("arousal", 0.3)),
        )


@dataclass(frozen=True)
class EmotionalClimate:
    weather: Weather
    stability_score: float
    short_term_mood: MoodVector = field(default_factory=MoodVector)
    mid_term_mood: MoodVector = field(default_factory=MoodVector)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weather": self.weather.value,
            "stability_score": self.stability_score,
            "short_term_mood": self.short_term_mood.to_dict(),
            "mid_term_mood": self.mid_term_mood.to_dict(),
        }


def stability_band(stability: float, tuning: EmotionTuning) -> str:
    if stability >= tuning.stable_band:
        return "stable"
    if stability >= tuning.unsettled_band:
        return "unsettled"
    return "volatile"


def climate_from_history(history: Sequence[Dict[str, float]], tuning: EmotionTuning) -> EmotionalClimate:
    """Derive the climate from history points ``{valence, arousal, timestamp}``, oldest first."""
    if not history:
        return EmotionalClimate(weather=Weather.CLEAR, stability_score=0.5)

    short = history[-tuning.short_window:]
    mid = history[-tuning.mid_window:]
    short_valences = [float(h["valence"]) for h in short]

    short_mood = MoodVector(ema(short_valences), ema([float(h["arousal"]) for h in short]))
    mid_mood = MoodVector(ema([float(h["valence"]) for h in mid]), ema([float(h["arousal"]) for h in mid]))
    stability = clamp(1.0 - variance(short_valences))

    if short_mood.valence > tuning.valence_band:
        sign = 1
    elif short_mood.valence < -tuning.valence_band:
        sign = -1
    else:
        sign = 0

    return EmotionalClimate(
        weather=WEATHER_TABLE[(stability_band(stability, tuning), sign)],
        stability_score=stability,
        short_term_mood=short_mood,
        mid_term_mood=mid_mood,
    )


def raw_intensities(message: str, reply: str = "", sentiment_hint: Optional[SentimentReading] = None) -> Dict[str, float]:
    """Unblended mood intensities for one exchange."""
    counts = {mood: 0 for mood in MOOD_AXES}
    for token in tokenize(message) + tokenize(reply):
        mood = MOOD_LEXICON.get(token)
        if mood:
            counts[mood] += 1

    raw = {mood: clamp(n * 0.35) for mood, n in counts.items()}
    if sentiment_hint is not None:
        if sentiment_hint.valence > 0:
            raw["joy"] = max(raw["joy"], sentiment_hint.valence)
        elif sentiment_hint.valence < 0:
            raw["sadness"] = max(raw["sadness"], -sentiment_hint.valence)
        raw["anxiety"] = max(raw["anxiety"], sentiment_hint.tension)
        raw["affection"] = max(raw["affection"], sentiment_hint.warmth if sentiment_hint.warmth > 0.5 else 0.0)
    return raw


def _mood_vector(intensities: Dict[str, float]) -> Tuple[float, float]:
    total = sum(intensities.get(m, 0.0) for m in MOOD_AXES)
    if total <= 0:
        return 0.0, 0.3
    valence = sum(MOOD_AXES[m][0] * intensities.get(m, 0.0) for m in MOOD_AXES) / total
    arousal = sum(MOOD_AXES[m][1] * intensities.get(m, 0.0) for m in MOOD_AXES) / total
    return clamp(valence, -1.0, 1.0), clamp(arousal)


def _strongest(intensities: Dict[str, float]) -> str:
    mood, value = max(intensities.items(), key=lambda kv: kv[1], default=(NEUTRAL, 0.0))
    return mood if value >= _PRESENCE_FLOOR else NEUTRAL


def _fingerprint(message: str, reply: str, hint: Optional[SentimentReading], now: float) -> str:
    payload = json.dumps([message, reply, hint.to_dict() if hint else None, now], sort_keys=True)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


class EmotionalStateManager:
    """Store-backed emotional state, single writer per identity."""

    def __init__(
        self,
        store: StateStore,
        tuning: Optional[EmotionTuning] = None,
        clock: Callable[[], float] = epoch_now,
    ):
        self.store = store
        self.tuning = tuning or EmotionTuning()
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, identity: IdentityKey) -> asyncio.Lock:
        lock = self._locks.get(identity.key)
        if lock is None:
            lock = self._locks[identity.key] = asyncio.Lock()
        return lock

    def forget(self, identity: IdentityKey) -> None:
        """Drop the identity's writer lock unless an ingest holds it. Stored state is kept."""
        lock = self._locks.get(identity.key)
        if lock is not None and not lock.locked():
            del self._locks[identity.key]

    async def _load(self, identity: IdentityKey) -> Tuple[Dict[str, Any], int]:
        record = await self.store.get(EMOTIONAL_STATE, identity.key)
        if record is None:
            return {}, 0
        return record.value, record.version

    async def ingest(
        self,
        identity: IdentityKey,
        message: str,
        reply: str = "",
        sentiment_hint: Optional[SentimentReading] = None,
        existing_snapshot: Optional[EmotionalSnapshot] = None,
        now: Optional[float] = None,
    ) -> EmotionalSnapshot:
        """Fold one exchange into the identity's emotional state."""
        now = self.clock() if now is None else now
        fingerprint = _fingerprint(message, reply, sentiment_hint, now)

        async with self._lock(identity):
            state, _ = await self._load(identity)
            stored = EmotionalSnapshot.from_dict(state["snapshot"]) if state.get("snapshot") else None
            if stored is not None and state.get("fingerprint") == fingerprint:
                logger.debug(f"Duplicate ingestion for {identity}; returning stored snapshot")
                return stored

            previous = existing_snapshot or stored
            fresh = previous is None
            if previous is None:
                previous = EmotionalSnapshot.neutral(now)

            w = self.tuning.blend_new_weight
            raw = raw_intensities(message, reply, sentiment_hint)
            blended = {
                mood: clamp(w * raw.get(mood, 0.0) + (1.0 - w) * previous.intensities.get(mood, 0.0))
                for mood in MOOD_AXES
            }

            dominant, since = previous.dominant_mood, previous.dominant_since
            candidate = _strongest(blended)
            if candidate != dominant:
                if fresh or now - since >= self.tuning.min_dwell_seconds:
                    dominant, since = candidate, now
                else:
                    logger.debug(
                        f"Holding dominant mood {dominant} for {identity} "
                        f"({now - since:.0f}s < {self.tuning.min_dwell_seconds:.0f}s dwell)"
                    )

            valence, arousal = _mood_vector(blended)
            tags = [m for m, v in sorted(blended.items(), key=lambda kv: -kv[1]) if v >= _TAG_FLOOR]
            if sentiment_hint is not None:
                if sentiment_hint.tension >= 0.6:
                    tags.append("tense")
                if sentiment_hint.warmth >= 0.6:
                    tags.append("warm")

            snapshot = EmotionalSnapshot(
                dominant_mood=dominant,
                intensities=blended,
                tags=tuple(tags),
                timestamp=now,
                dominant_since=since,
                valence=valence,
                arousal=arousal,
            )

            history: List[Dict[str, Any]] = list(state.get("history") or [])
            history.append({"valence": valence, "arousal": arousal, "mood": dominant, "timestamp": now})
            history = history[-self.tuning.history_capacity:]

            await self.store.put(EMOTIONAL_STATE, identity.key, {
                "snapshot": snapshot.to_dict(),
                "history": history,
                "fingerprint": fingerprint,
                "last_ingest": now,
            })
            return snapshot

    async def get_snapshot(self, identity: IdentityKey) -> Optional[EmotionalSnapshot]:
        state, _ = await self._load(identity)
        if not state.get("snapshot"):
            return None
        return EmotionalSnapshot.from_dict(state["snapshot"])

    async def get_history(self, identity: IdentityKey) -> List[Dict[str, Any]]:
        state, _ = await self._load(identity)
        return list(state.get("history") or [])

    async def get_climate(self, identity: IdentityKey) -> EmotionalClimate:
        return climate_from_history(await self.get_history(identity), self.tuning)

    async def decay(self, identity: IdentityKey, now: Optional[float] = None) -> bool:
        """
        Drift intensities toward neutral once the identity has been quiet for
        ``decay_after_seconds``. Returns True if a decayed state was written.
        """
        now = self.clock() if now is None else now
        state, version = await self._load(identity)
        if not state.get("snapshot"):
            return False
        if now - float(state.get("last_ingest", now)) < self.tuning.decay_after_seconds:
            return False

        current = EmotionalSnapshot.from_dict(state["snapshot"])
        if all(v < 0.01 for v in current.intensities.values()):
            return False

        keep = 1.0 - self.tuning.decay_rate
        decayed = {mood: value * keep for mood, value in current.intensities.items()}
        dominant, since = current.dominant_mood, current.dominant_since
        if _strongest(decayed) == NEUTRAL and dominant != NEUTRAL:
            dominant, since = NEUTRAL, now
        valence, arousal = _mood_vector(decayed)

        snapshot = EmotionalSnapshot(
            dominant_mood=dominant,
            intensities=decayed,
            tags=tuple(t for t in current.tags if decayed.get(t, 1.0) >= _TAG_FLOOR),
            timestamp=now,
            dominant_since=since,
            valence=valence,
            arousal=arousal,
        )
        updated = dict(state, snapshot=snapshot.to_dict(), last_decay=now)
        written = await self.store.compare_and_set(EMOTIONAL_STATE, identity.key, updated, version)
        if not written:
            logger.debug(f"Mood decay for {identity} skipped: state changed underneath")
        return written
