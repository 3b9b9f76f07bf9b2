"""
Memory Context Builder

Selects the few remembered moments worth putting in front of the responder
for this message. Only entries unlocked at the current trust tier are
considered; they are ranked by a composite of keyword overlap with the
message, recency and stored weight.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..agent.bonding import BondTracker
from ..conversation.types import IdentityKey
from ..utils.datetime import epoch_now
from ..utils.text_utils import tokenize
from .memory_log import MemoryEntry, MemoryLog
from .topics import STOPWORDS, extract_topics

logger = logging.getLogger("companion.memory.context_builder")


@dataclass(frozen=True)
class MemoryContext:
    entries: Tuple[MemoryEntry, ...] = ()
    topics: Tuple[str, ...] = ()
    trust_tier: int = 0

    @classmethod
    def empty(cls) -> "MemoryContext":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def summary_lines(self) -> List[str]:
        return [e.summary for e in self.entries]


@dataclass
class RankingWeights:
    overlap: float = 0.5
    recency: float = 0.3
    weight: float = 0.2
    recency_half_life_seconds: float = 3 * 24 * 3600.0
    min_score: float = 0.15
    candidates: int = 200


class MemoryContextBuilder:
    def __init__(
        self,
        memory_log: MemoryLog,
        bonds: BondTracker,
        top_k: int = 3,
        weights: Optional[RankingWeights] = None,
    ):
        self.memory_log = memory_log
        self.bonds = bonds
        self.top_k = top_k
        self.weights = weights or RankingWeights()

    def score(self, entry: MemoryEntry, query_terms: set, now: float) -> float:
        w = self.weights
        terms = set(tokenize(entry.summary)) | set(entry.tags)
        overlap = len(query_terms & terms) / len(query_terms) if query_terms else 0.0
        age = max(0.0, now - entry.timestamp)
        recency = math.exp(-math.log(2) * age / w.recency_half_life_seconds)
        return w.overlap * overlap + w.recency * recency + w.weight * entry.weight

    async def build(self, identity: IdentityKey, message: str, now: Optional[float] = None) -> MemoryContext:
        now = epoch_now() if now is None else now
        bond = await self.bonds.get(identity)
        tier = int(bond.tier)
        unlocked = await self.memory_log.get_recent(identity, tier, limit=self.weights.candidates)

        topics = tuple(extract_topics(message))
        if not unlocked:
            return MemoryContext(topics=topics, trust_tier=tier)

        query_terms = {t for t in tokenize(message) if len(t) > 2 and t not in STOPWORDS} | set(topics)
        scored = [(self.score(e, query_terms, now), e) for e in unlocked]
        scored = [pair for pair in scored if pair[0] >= self.weights.min_score]
        scored.sort(key=lambda pair: (-pair[0], -pair[1].timestamp))
        picked = tuple(e for _, e in scored[: self.top_k])

        logger.debug(f"Memory context for {identity}: {len(picked)}/{len(unlocked)} entries at tier {tier}")
        return MemoryContext(entries=picked, topics=topics, trust_tier=tier)
