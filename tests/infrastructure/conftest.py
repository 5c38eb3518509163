"""Infrastructure fixtures: a throwaway SQLite file per test."""

import pytest

from exception_rules.infrastructure.database import DatabaseSessionManager


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'rules.db'}"


@pytest.fixture
async def db(database_url):
    manager = DatabaseSessionManager(database_url)
    await manager.create_all()
    yield manager
    await manager.dispose()
