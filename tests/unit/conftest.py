"""Pytest configuration and fixtures for unit tests."""

import pytest

from commitbet.core import db_client
from commitbet.core.config import settings
from commitbet.domain.user import User
from commitbet.services import user_service


@pytest.fixture
async def db(tmp_path, monkeypatch):
    """Provides a fresh SQLite database with the schema applied."""
    monkeypatch.setattr(settings, "sqlite_db_path", str(tmp_path / "commitbet.db"))
    await db_client.init_db()
    yield
    await db_client.close_connection()


@pytest.fixture
async def alice(db) -> User:
    """Task owner in UTC with the default opening balance."""
    return await user_service.register_user(name="Alice", timezone="UTC")


@pytest.fixture
async def bob(db, alice) -> User:
    """Alice's friend, who judges her tasks."""
    user = await user_service.register_user(name="Bob", timezone="Europe/London")
    await user_service.add_friend(user_id=alice.id, friend_id=user.id)
    return user


@pytest.fixture
async def carol(db) -> User:
    """A user who is nobody's friend."""
    return await user_service.register_user(name="Carol")
