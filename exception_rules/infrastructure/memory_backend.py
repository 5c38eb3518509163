"""In-Memory Backend: CollectionBackend kept in a dict, for tests and embedding.

Invariants:
    - load() and save() deep-copy, so callers never alias stored data
    - Unknown collections load as []
"""

import copy


class InMemoryBackend:
    """Dict-backed CollectionBackend."""

    def __init__(self, initial: dict[str, list[dict]] | None = None):
        self._collections: dict[str, list[dict]] = {
            name: copy.deepcopy(items) for name, items in (initial or {}).items()
        }
        self.save_count = 0

    async def load(self, collection: str, for_update: bool = False) -> list[dict]:
        return copy.deepcopy(self._collections.get(collection, []))

    async def save(self, collection: str, items: list[dict]) -> None:
        self._collections[collection] = copy.deepcopy(list(items))
        self.save_count += 1
