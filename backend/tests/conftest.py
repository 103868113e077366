"""Shared fixtures: a mocked AsyncSession that supports SAVEPOINT blocks."""

from unittest.mock import AsyncMock, MagicMock

import pytest


def make_db() -> AsyncMock:
    db = AsyncMock()
    db.add = MagicMock()
    nested = MagicMock()
    nested.__aenter__ = AsyncMock(return_value=None)
    nested.__aexit__ = AsyncMock(return_value=False)
    db.begin_nested = MagicMock(return_value=nested)
    return db


@pytest.fixture
def db():
    return make_db()
