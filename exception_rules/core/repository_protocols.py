"""Boundary Protocols: contracts between core and shell.

Invariants:
    - Core NEVER imports from shell, dependency arrows point inward only
    - The persistence backend is reached only through CollectionBackend
    - A save checks against the last for_update load of that collection, never a plain read
    - Implementations provided by infrastructure/ via dependency injection

Design Decisions:
    - Protocol over ABC: structural subtyping, no inheritance hierarchy
    - Async in Protocol: backend methods are async because implementations do IO,
      but the pure core functions that consume their data are never async themselves
"""

from typing import Protocol


class CollectionBackend(Protocol):
    """Dumb durable store for named collections of JSON-compatible dicts."""

    async def load(self, collection: str, for_update: bool = False) -> list[dict]:
        """Current items. for_update marks a read that a save of the same collection follows."""
        ...

    async def save(self, collection: str, items: list[dict]) -> None: ...
