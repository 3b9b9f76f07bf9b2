"""
Memory Log

Append-only per-identity record of remembered moments. Each entry carries the
trust tier required before it may be surfaced and a weight for ranking.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..conversation.types import IdentityKey
from ..db.state_store import MEMORY, StateStore
from ..utils.datetime import epoch_now

logger = logging.getLogger("companion.memory.memory_log")

DEFAULT_CAPACITY = 500


@dataclass(frozen=True)
class MemoryEntry:
    type: str
    trust_threshold: int
    summary: str
    timestamp: float
    weight: float = 0.5
    tags: Tuple[str, ...] = ()
    thread_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "trust_threshold": self.trust_threshold,
            "summary": self.summary,
            "timestamp": self.timestamp,
            "weight": self.weight,
            "tags": list(self.tags),
            "thread_id": self.thread_id,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEntry":
        return cls(
            type=data.get("type", "conversation"),
            trust_threshold=int(data.get("trust_threshold", 0)),
            summary=data.get("summary", ""),
            timestamp=float(data.get("timestamp", 0.0)),
            weight=float(data.get("weight", 0.5)),
            tags=tuple(data.get("tags") or ()),
            thread_id=data.get("thread_id"),
            details=dict(data.get("details") or {}),
        )


class MemoryLog:
    def __init__(self, store: StateStore, capacity: int = DEFAULT_CAPACITY):
        self.store = store
        self.capacity = capacity

    async def add(self, identity: IdentityKey, entry: MemoryEntry) -> MemoryEntry:
        await self.store.append(MEMORY, identity.key, entry.to_dict(), capacity=self.capacity)
        return entry

    async def all(self, identity: IdentityKey, limit: Optional[int] = None) -> List[MemoryEntry]:
        return [MemoryEntry.from_dict(d) for d in await self.store.items(MEMORY, identity.key, limit=limit)]

    async def get_recent(self, identity: IdentityKey, trust_level: int, limit: int = 50) -> List[MemoryEntry]:
        """Entries unlocked at ``trust_level``, newest last."""
        return [e for e in await self.all(identity, limit=limit) if e.trust_threshold <= trust_level]

    async def get_weighted(self, identity: IdentityKey, trust_level: int, k: int = 5) -> List[MemoryEntry]:
        unlocked = await self.get_recent(identity, trust_level, limit=self.capacity)
        return sorted(unlocked, key=lambda e: (-e.weight, -e.timestamp))[:k]

    async def soft_reflection(self, identity: IdentityKey, trust_level: int) -> Optional[str]:
        """An unprompted "I was thinking about..." line over the weightiest unlocked memory."""
        picks = await self.get_weighted(identity, trust_level, k=1)
        if not picks:
            return None
        summary = picks[0].summary.strip().rstrip(".")
        if not summary:
            return None
        return f"I was thinking about something… {summary[0].lower()}{summary[1:]}."


def summarize_exchange(message: str, reply: str, max_chars: int = 160) -> str:
    """One-line summary of a turn for the memory log."""
    said = " ".join(message.split())
    if len(said) > max_chars:
        said = said[:max_chars].rsplit(" ", 1)[0] + "…"
    return f"You told me: {said}" if said else f"I said: {' '.join(reply.split())[:max_chars]}"


def new_entry(
    message: str,
    reply: str,
    tags: List[str],
    thread_id: Optional[str],
    trust_threshold: int = 0,
    weight: float = 0.5,
    now: Optional[float] = None,
) -> MemoryEntry:
    return MemoryEntry(
        type="conversation",
        trust_threshold=trust_threshold,
        summary=summarize_exchange(message, reply),
        timestamp=epoch_now() if now is None else now,
        weight=weight,
        tags=tuple(tags),
        thread_id=thread_id,
        details={"message": message, "reply": reply},
    )
