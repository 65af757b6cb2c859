"""Tests for user registration and friendships."""

import pytest

from commitbet.core.errors import InvalidRequestError, NotFoundError
from commitbet.services import user_service


@pytest.mark.unit
class TestRegisterUser:
    async def test_register_with_zone(self, db):
        user = await user_service.register_user(name="  Dana ", timezone="Asia/Tokyo")

        assert user.name == "Dana"
        assert user.timezone == "Asia/Tokyo"

    async def test_unknown_zone(self, db):
        with pytest.raises(InvalidRequestError, match="Unknown time zone"):
            await user_service.register_user(name="Dana", timezone="Mars/Olympus")

    async def test_get_unknown_user(self, db):
        with pytest.raises(NotFoundError):
            await user_service.get_user(user_id="abc")

    async def test_update_timezone(self, alice):
        user = await user_service.update_timezone(user_id=alice.id, timezone="Europe/Paris")

        assert user.timezone == "Europe/Paris"
        assert (await user_service.get_user(user_id=alice.id)).timezone == "Europe/Paris"


@pytest.mark.unit
class TestFriends:
    async def test_friendship_is_symmetric(self, alice, bob):
        assert await user_service.is_friend(user_id=alice.id, candidate_id=bob.id)
        assert await user_service.is_friend(user_id=bob.id, candidate_id=alice.id)

    async def test_adding_twice_is_idempotent(self, alice, bob):
        await user_service.add_friend(user_id=bob.id, friend_id=alice.id)

        assert [u.id for u in await user_service.list_friends(user_id=alice.id)] == [bob.id]

    async def test_cannot_befriend_self(self, alice):
        with pytest.raises(InvalidRequestError):
            await user_service.add_friend(user_id=alice.id, friend_id=alice.id)

    async def test_unknown_friend(self, alice):
        with pytest.raises(NotFoundError):
            await user_service.add_friend(user_id=alice.id, friend_id="999")

    async def test_strangers_are_not_friends(self, alice, carol):
        assert not await user_service.is_friend(user_id=alice.id, candidate_id=carol.id)
