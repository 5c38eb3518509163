"""SQL Collection Backend: CollectionBackend over one JSON row per collection.

Invariants:
    - save() succeeds only if the row's version equals the one seen by the last
      load(for_update=True) of that collection; plain loads never move it
    - Each expected version is consumed by the save that follows it
    - A version mismatch (or a lost insert race) raises ConcurrentModificationError
    - Every other SQLAlchemy failure surfaces as StorageError via DatabaseSessionManager
    - A save with no pending for_update load is written without a version check

Design Decisions:
    - UPDATE ... WHERE version = :expected over SELECT FOR UPDATE: works on SQLite and
      PostgreSQL alike, and the rowcount is the whole conflict check
"""

import copy
import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from exception_rules.core.errors import ConcurrentModificationError, ErrorContext
from exception_rules.infrastructure.database import DatabaseSessionManager
from exception_rules.models.collection import StoredCollection

logger = logging.getLogger(__name__)


class SqlCollectionBackend:
    """Persists each collection as a versioned JSON document."""

    def __init__(self, db: DatabaseSessionManager):
        self._db = db
        self._versions: dict[str, int] = {}

    async def load(self, collection: str, for_update: bool = False) -> list[dict]:
        async with self._db.session() as session:
            row = await session.get(StoredCollection, collection)
            if for_update:
                self._versions[collection] = row.version if row is not None else 0
            if row is None:
                return []
            return copy.deepcopy(list(row.payload))

    async def save(self, collection: str, items: list[dict]) -> None:
        expected = self._versions.pop(collection, None)
        payload = copy.deepcopy(list(items))
        now = datetime.now(timezone.utc)

        async with self._db.session() as session:
            if expected is None:
                row = await session.get(StoredCollection, collection)
                expected = row.version if row is not None else 0

            if expected == 0:
                session.add(StoredCollection(
                    name=collection, payload=payload, version=1, updated_at=now,
                ))
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise self._conflict(collection, expected) from e
                return

            result = await session.execute(
                update(StoredCollection)
                .where(
                    StoredCollection.name == collection,
                    StoredCollection.version == expected,
                )
                .values(payload=payload, version=expected + 1, updated_at=now)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise self._conflict(collection, expected)
            await session.commit()

    def _conflict(self, collection: str, expected: int) -> ConcurrentModificationError:
        logger.warning(
            f"Collection {collection} changed since version {expected}",
            extra={"operation": "save"},
        )
        return ConcurrentModificationError(
            f"Collection {collection} was modified by another writer",
            ErrorContext(operation="save", debug_info={
                "collection": collection, "expected_version": expected,
            }),
        )
