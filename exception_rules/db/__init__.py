"""Database Infrastructure: SQLAlchemy declarative base.

Invariants:
    - All sessions are async (AsyncSession)

Design Decisions:
    - aiosqlite by default for embedded use, asyncpg for PostgreSQL deployments
"""
