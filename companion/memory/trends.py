"""
Sentiment Trend and Synchrony

Two small trackers fed by the finalizer after each committed turn:

* the sentiment trend keeps a bounded series of ``{valence, activation,
  timestamp}`` points per identity;
* the synchrony tracker measures how closely the synth's reply mood follows
  the host's, as an exponential average in [0, 1].
"""

import logging
from dataclasses import asdict, dataclass
from typing import List, Optional

from ..agent.sentiment import SentimentReading
from ..conversation.types import IdentityKey
from ..db.state_store import SENTIMENT_TREND, SYNCHRONY, StateStore
from ..utils.numeric_utils import clamp, ema

logger = logging.getLogger("companion.memory.trends")


@dataclass(frozen=True)
class SentimentTrendPoint:
    valence: float
    activation: float
    timestamp: float

    def to_dict(self):
        return asdict(self)


class SentimentTrendTracker:
    def __init__(self, store: StateStore, capacity: int = 200, retention_seconds: float = 7 * 24 * 3600.0):
        self.store = store
        self.capacity = capacity
        self.retention_seconds = retention_seconds

    async def record(self, identity: IdentityKey, reading: SentimentReading, now: float) -> SentimentTrendPoint:
        point = SentimentTrendPoint(valence=reading.valence, activation=reading.activation, timestamp=now)
        await self.store.append(SENTIMENT_TREND, identity.key, point.to_dict(), capacity=self.capacity)
        return point

    async def points(self, identity: IdentityKey, limit: Optional[int] = None) -> List[SentimentTrendPoint]:
        raw = await self.store.items(SENTIMENT_TREND, identity.key, limit=limit)
        return [SentimentTrendPoint(float(p["valence"]), float(p["activation"]), float(p["timestamp"])) for p in raw]

    async def recent_valence(self, identity: IdentityKey, window: int = 10) -> float:
        return ema([p.valence for p in await self.points(identity, limit=window)])

    async def prune(self, identity: IdentityKey, now: float) -> bool:
        """Drop points older than the retention window. Returns True if anything was removed."""
        removed = await self.store.prune_items(SENTIMENT_TREND, identity.key, now - self.retention_seconds)
        if removed:
            logger.debug(f"Pruned {removed} trend points for {identity}")
        return bool(removed)


class SynchronyTracker:
    """EMA of per-turn agreement between host valence and reply valence."""

    def __init__(self, store: StateStore, alpha: float = 0.3):
        self.store = store
        self.alpha = alpha

    @staticmethod
    def agreement(host: SentimentReading, reply: SentimentReading) -> float:
        # Valence spans 2 units, activation spans 1
        valence_gap = abs(host.valence - reply.valence) / 2.0
        activation_gap = abs(host.activation - reply.activation)
        return clamp(1.0 - (0.7 * valence_gap + 0.3 * activation_gap))

    async def get(self, identity: IdentityKey) -> float:
        record = await self.store.get(SYNCHRONY, identity.key)
        return float(record.value.get("score", 0.5)) if record else 0.5

    async def update(self, identity: IdentityKey, host: SentimentReading, reply: SentimentReading, now: float) -> float:
        current = await self.get(identity)
        score = clamp(self.alpha * self.agreement(host, reply) + (1 - self.alpha) * current)
        await self.store.put(SYNCHRONY, identity.key, {"score": score, "updated_at": now})
        return score
