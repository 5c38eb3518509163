"""ORM Models: SQLAlchemy declarative models for persisted collections.

Invariants:
    - All models inherit from Base (db/base.py)

Design Decisions:
    - All models imported here so metadata is complete before create_all or alembic autogenerate
"""

from exception_rules.models.collection import StoredCollection  # noqa: F401
