"""StoredCollection ORM: one row per opaque collection ("rules", "usage_records").

Invariants:
    - name is the primary key; exactly one row per collection
    - payload is the whole collection as a JSON array of dicts
    - version increments on every successful write (optimistic concurrency)

Design Decisions:
    - JSON column over per-entity tables: the backend is a dumb blob store,
      the engine owns every validation and consistency rule
"""

from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from exception_rules.db.base import Base


class StoredCollection(Base):
    """A named collection persisted as a single JSON document."""
    __tablename__ = "rule_collections"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    payload: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
