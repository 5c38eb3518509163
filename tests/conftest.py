"""Root conftest: shared test configuration."""

import os

import pytest

from exception_rules.config import Settings

# Ensure tests never touch a developer's real database
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///test_exception_rules.db")


@pytest.fixture
def settings() -> Settings:
    """Default settings, isolated from any .env file."""
    return Settings(_env_file=None)
