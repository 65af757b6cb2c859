"""User service: registration, time zones and the friend graph."""

import logging

from pydantic import ValidationError

from commitbet.core import db_client
from commitbet.core.db_client import sanitize_param
from commitbet.core.errors import InvalidRequestError, NotFoundError
from commitbet.core.logging import span
from commitbet.domain.user import User, UserCreate
from commitbet.services import ledger_service


logger = logging.getLogger(__name__)


async def register_user(*, name: str, timezone: str | None = None) -> User:
    """Register a user and open their ledger.

    Args:
        name: Display name
        timezone: IANA time zone; None uses the configured default

    Returns:
        Created user

    Raises:
        InvalidRequestError: If the name or time zone is invalid
    """
    with span("user_service.register_user"):
        try:
            payload = UserCreate(name=name, timezone=timezone)
        except ValidationError as e:
            raise InvalidRequestError(str(e)) from e

        async with db_client.transaction():
            data = {"name": payload.name.strip()}
            if payload.timezone:
                data["timezone"] = payload.timezone
            record = await db_client.create_record(collection="users", data=data)
            await ledger_service.open_ledger(user_id=record["id"])

        logger.info("Registered user %s (%s)", record["id"], payload.name)
        return User.model_validate(record)


async def get_user(*, user_id: str) -> User:
    """Get a user by ID.

    Raises:
        NotFoundError: If the user does not exist
    """
    with span("user_service.get_user"):
        msg = f"User not found: {user_id}"
        if not str(user_id).isdigit():
            raise NotFoundError(msg)
        try:
            record = await db_client.get_record(collection="users", record_id=user_id)
        except db_client.RecordNotFoundError as e:
            raise NotFoundError(msg) from e
        return User.model_validate(record)


async def update_timezone(*, user_id: str, timezone: str | None) -> User:
    """Change a user's time zone; None reverts to the configured default."""
    with span("user_service.update_timezone"):
        user = await get_user(user_id=user_id)
        try:
            UserCreate(name=user.name, timezone=timezone)
        except ValidationError as e:
            raise InvalidRequestError(str(e)) from e

        record = await db_client.update_record(collection="users", record_id=user_id, data={"timezone": timezone})
        logger.info("Updated time zone for user %s to %s", user_id, timezone)
        return User.model_validate(record)


async def add_friend(*, user_id: str, friend_id: str) -> None:
    """Confirm a friendship in both directions (idempotent).

    Raises:
        InvalidRequestError: If a user tries to befriend themselves
        NotFoundError: If either user does not exist
    """
    with span("user_service.add_friend"):
        if user_id == friend_id:
            msg = "Cannot add yourself as a friend"
            raise InvalidRequestError(msg)

        await get_user(user_id=user_id)
        await get_user(user_id=friend_id)

        async with db_client.transaction():
            for a, b in ((user_id, friend_id), (friend_id, user_id)):
                await db_client.insert_if_absent(
                    collection="friendships",
                    data={"user_id": a, "friend_id": b},
                    conflict_fields=["user_id", "friend_id"],
                )

        logger.info("Confirmed friendship between %s and %s", user_id, friend_id)


async def is_friend(*, user_id: str, candidate_id: str) -> bool:
    """Check whether candidate_id is a confirmed friend of user_id."""
    with span("user_service.is_friend"):
        record = await db_client.get_first_record(
            collection="friendships",
            filter_query=f'user_id = "{sanitize_param(user_id)}" && friend_id = "{sanitize_param(candidate_id)}"',
        )
        return record is not None


async def list_friends(*, user_id: str) -> list[User]:
    """List a user's confirmed friends."""
    with span("user_service.list_friends"):
        records = await db_client.list_all_records(
            collection="friendships",
            filter_query=f'user_id = "{sanitize_param(user_id)}"',
        )
        return [await get_user(user_id=r["friend_id"]) for r in records]
