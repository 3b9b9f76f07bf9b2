"""
Per-identity State Store

Durable state is stored as JSON documents keyed by ``(namespace, identity)``.
Two shapes are supported:

* versioned records (``get`` / ``put`` / ``compare_and_set``), one document
  per identity, e.g. emotional state and bond;
* append-only item lists (``append`` / ``items`` / ``prune_items``), e.g.
  memory entries and sentiment trend points.

Turn-time writers hold the per-identity lock and use ``put``. Background
tasks never lock; they use ``compare_and_set`` and skip on a version miss.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import delete, distinct, select, update
from sqlalchemy.exc import IntegrityError

from ..utils.datetime import epoch_now, utc_now
from .models import StateItem, StateRecord
from .session import Database

logger = logging.getLogger("companion.db.state_store")

# Namespaces
EMOTIONAL_STATE = "emotional_state"
BOND = "bond"
SYNCHRONY = "synchrony"
MEMORY = "memory"
SENTIMENT_TREND = "sentiment_trend"


@dataclass(frozen=True)
class Versioned:
    value: Dict[str, Any]
    version: int


class StateStore(Protocol):
    async def get(self, namespace: str, key: str) -> Optional[Versioned]:
        ...

    async def put(self, namespace: str, key: str, value: Dict[str, Any]) -> int:
        ...

    async def compare_and_set(self, namespace: str, key: str, value: Dict[str, Any], expected_version: int) -> bool:
        ...

    async def append(self, namespace: str, key: str, item: Dict[str, Any], capacity: Optional[int] = None) -> None:
        ...

    async def items(self, namespace: str, key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        ...

    async def prune_items(self, namespace: str, key: str, older_than: float) -> int:
        ...

    async def identities(self, namespace: str) -> List[str]:
        ...


class InMemoryStateStore:
    """Process-local store. Values are deep-copied in and out."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], Versioned] = {}
        self._items: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}

    async def get(self, namespace: str, key: str) -> Optional[Versioned]:
        record = self._records.get((namespace, key))
        if record is None:
            return None
        return Versioned(copy.deepcopy(record.value), record.version)

    async def put(self, namespace: str, key: str, value: Dict[str, Any]) -> int:
        current = self._records.get((namespace, key))
        version = (current.version if current else 0) + 1
        self._records[(namespace, key)] = Versioned(copy.deepcopy(value), version)
        return version

    async def compare_and_set(self, namespace: str, key: str, value: Dict[str, Any], expected_version: int) -> bool:
        current = self._records.get((namespace, key))
        current_version = current.version if current else 0
        if current_version != expected_version:
            logger.debug(f"CAS miss on {namespace}/{key}: expected v{expected_version}, found v{current_version}")
            return False
        self._records[(namespace, key)] = Versioned(copy.deepcopy(value), current_version + 1)
        return True

    async def append(self, namespace: str, key: str, item: Dict[str, Any], capacity: Optional[int] = None) -> None:
        bucket = self._items.setdefault((namespace, key), [])
        bucket.append(copy.deepcopy(item))
        if capacity is not None and len(bucket) > capacity:
            del bucket[: len(bucket) - capacity]

    async def items(self, namespace: str, key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        bucket = self._items.get((namespace, key), [])
        if limit is not None:
            bucket = bucket[-limit:] if limit > 0 else []
        return copy.deepcopy(bucket)

    async def prune_items(self, namespace: str, key: str, older_than: float) -> int:
        bucket = self._items.get((namespace, key))
        if not bucket:
            return 0
        kept = [i for i in bucket if i.get("timestamp", older_than) >= older_than]
        removed = len(bucket) - len(kept)
        self._items[(namespace, key)] = kept
        return removed

    async def identities(self, namespace: str) -> List[str]:
        keys = {k for (ns, k) in self._records if ns == namespace}
        keys.update(k for (ns, k) in self._items if ns == namespace)
        return sorted(keys)


class SQLStateStore:
    """SQLAlchemy-backed store (any async dialect; sqlite+aiosqlite by default)."""

    def __init__(self, database: Database):
        self.db = database

    async def get(self, namespace: str, key: str) -> Optional[Versioned]:
        async with self.db.session() as session:
            record = await session.get(StateRecord, (namespace, key))
            if record is None:
                return None
            return Versioned(dict(record.payload), record.version)

    async def put(self, namespace: str, key: str, value: Dict[str, Any]) -> int:
        async with self.db.session() as session:
            record = await session.get(StateRecord, (namespace, key))
            if record is None:
                record = StateRecord(namespace=namespace, identity_key=key, version=1, payload=dict(value))
                session.add(record)
            else:
                record.version = record.version + 1
                record.payload = dict(value)
            await session.flush()
            return record.version

    async def compare_and_set(self, namespace: str, key: str, value: Dict[str, Any], expected_version: int) -> bool:
        if expected_version == 0:
            try:
                async with self.db.session() as session:
                    session.add(StateRecord(namespace=namespace, identity_key=key, version=1, payload=dict(value)))
                    await session.flush()
            except IntegrityError:
                logger.debug(f"CAS miss on {namespace}/{key}: record already exists")
                return False
            return True

        async with self.db.session() as session:
            result = await session.execute(
                update(StateRecord)
                .where(
                    StateRecord.namespace == namespace,
                    StateRecord.identity_key == key,
                    StateRecord.version == expected_version,
                )
                .values(payload=dict(value), version=expected_version + 1, updated_at=utc_now())
            )
            if result.rowcount != 1:
                logger.debug(f"CAS miss on {namespace}/{key}: expected v{expected_version}")
                return False
            return True

    async def append(self, namespace: str, key: str, item: Dict[str, Any], capacity: Optional[int] = None) -> None:
        async with self.db.session() as session:
            session.add(StateItem(
                namespace=namespace,
                identity_key=key,
                payload=dict(item),
                created_at=float(item.get("timestamp", epoch_now())),
            ))
            await session.flush()
            if capacity is not None:
                stale = await session.execute(
                    select(StateItem.id)
                    .where(StateItem.namespace == namespace, StateItem.identity_key == key)
                    .order_by(StateItem.id.desc())
                    .offset(capacity)
                )
                stale_ids = list(stale.scalars())
                if stale_ids:
                    await session.execute(delete(StateItem).where(StateItem.id.in_(stale_ids)))

    async def items(self, namespace: str, key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        async with self.db.session() as session:
            query = select(StateItem).where(StateItem.namespace == namespace, StateItem.identity_key == key)
            if limit is not None:
                result = await session.execute(query.order_by(StateItem.id.desc()).limit(max(limit, 0)))
                rows = list(reversed(result.scalars().all()))
            else:
                result = await session.execute(query.order_by(StateItem.id.asc()))
                rows = result.scalars().all()
            return [dict(row.payload) for row in rows]

    async def prune_items(self, namespace: str, key: str, older_than: float) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(StateItem).where(
                    StateItem.namespace == namespace,
                    StateItem.identity_key == key,
                    StateItem.created_at < older_than,
                )
            )
            return result.rowcount or 0

    async def identities(self, namespace: str) -> List[str]:
        async with self.db.session() as session:
            records = await session.execute(
                select(distinct(StateRecord.identity_key)).where(StateRecord.namespace == namespace)
            )
            items = await session.execute(
                select(distinct(StateItem.identity_key)).where(StateItem.namespace == namespace)
            )
            return sorted(set(records.scalars()) | set(items.scalars()))
