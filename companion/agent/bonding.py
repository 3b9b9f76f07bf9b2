"""
Bond Tracking

Trust and affection between a synth and its host, plus the trust tier that
gates which memories may be surfaced. Trust only ever moves in small steps;
the tier follows trust, so it climbs one level at a time.
"""

import logging
from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import Any, Dict

from ..conversation.types import IdentityKey
from ..db.state_store import BOND, StateStore
from ..utils.numeric_utils import clamp

logger = logging.getLogger("companion.agent.bonding")


class TrustTier(IntEnum):
    UNFAMILIAR = 0
    CURIOUS = 1
    COMFORTABLE = 2
    BONDED = 3
    TRUEBOND = 4


# Lower trust bound of each tier above UNFAMILIAR
TIER_FLOORS = (
    (TrustTier.TRUEBOND, 0.85),
    (TrustTier.BONDED, 0.65),
    (TrustTier.COMFORTABLE, 0.45),
    (TrustTier.CURIOUS, 0.2),
)


def tier_for_trust(trust: float) -> TrustTier:
    for tier, floor in TIER_FLOORS:
        if trust >= floor:
            return tier
    return TrustTier.UNFAMILIAR


@dataclass(frozen=True)
class BondState:
    trust: float = 0.1
    affection: float = 0.1
    tier: TrustTier = TrustTier.UNFAMILIAR

    @classmethod
    def initial(cls) -> "BondState":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier"] = int(self.tier)
        data["tier_name"] = self.tier.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BondState":
        trust = float(data.get("trust", 0.1))
        return cls(
            trust=trust,
            affection=float(data.get("affection", 0.1)),
            tier=TrustTier(int(data.get("tier", tier_for_trust(trust)))),
        )


class BondTracker:
    """Store-backed accessor for ``BondState``."""

    def __init__(self, store: StateStore, trust_step: float = 0.02, affection_step: float = 0.03):
        self.store = store
        self.trust_step = trust_step
        self.affection_step = affection_step

    async def get(self, identity: IdentityKey) -> BondState:
        record = await self.store.get(BOND, identity.key)
        if record is None:
            return BondState.initial()
        return BondState.from_dict(record.value)

    async def set(self, identity: IdentityKey, state: BondState) -> BondState:
        await self.store.put(BOND, identity.key, state.to_dict())
        return state

    async def nudge(
        self,
        identity: IdentityKey,
        warmth: float,
        synchrony: float,
        valence: float = 0.0,
    ) -> BondState:
        """
        Apply one turn's worth of bond movement.

        Warm, in-sync turns raise trust and affection by up to one step;
        hostile turns (strongly negative valence with no warmth) lower
        affection by half a step. Trust never drops from a single turn.
        """
        current = await self.get(identity)
        trust_gain = self.trust_step * clamp(synchrony) * (1.0 if warmth >= 0.4 else 0.5)
        affection_gain = self.affection_step * clamp(warmth)
        if valence <= -0.6 and warmth < 0.2:
            affection_gain = -self.affection_step / 2

        trust = clamp(current.trust + trust_gain)
        affection = clamp(current.affection + affection_gain)
        tier = tier_for_trust(trust)
        if tier > current.tier + 1:
            tier = TrustTier(current.tier + 1)
        if tier < current.tier:
            tier = current.tier

        updated = BondState(trust=trust, affection=affection, tier=tier)
        if updated.tier != current.tier:
            logger.info(f"Bond with {identity} moved to tier {updated.tier.name}")
        return await self.set(identity, updated)
