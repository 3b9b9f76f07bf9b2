"""
Per-identity State Models

Two generic tables back every piece of durable per-identity state:

* ``state_records`` holds one versioned JSON document per (namespace,
  identity), e.g. the emotional state or the bond. The version column drives
  compare-and-set writes.
* ``state_items`` holds append-only JSON rows per (namespace, identity), e.g.
  memory entries and sentiment trend points.
"""

from typing import Any, Dict

from sqlalchemy import JSON, Column, DateTime, Float, Index, Integer, String

from ..utils.datetime import isoformat_utc, utc_now
from .base import Base


class StateRecord(Base):
    __tablename__ = "state_records"

    namespace = Column(String(64), primary_key=True)
    identity_key = Column(String(255), primary_key=True)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "identity_key": self.identity_key,
            "version": self.version,
            "payload": self.payload,
            "updated_at": isoformat_utc(self.updated_at),
        }


class StateItem(Base):
    __tablename__ = "state_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    namespace = Column(String(64), nullable=False)
    identity_key = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=False)
    # Epoch seconds of the item itself, used for pruning
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_state_items_namespace_identity", "namespace", "identity_key"),
    )
