"""User domain models."""

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


# Constants for validation
MAX_NAME_LENGTH = 50


def _validate_timezone_name(v: str | None) -> str | None:
    if v is None or v == "":
        return None
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, ValueError) as e:
        msg = f"Unknown time zone: {v}"
        raise ValueError(msg) from e
    return v


class User(BaseModel):
    """User data transfer object."""

    id: str = Field(..., description="Unique user ID from database")
    name: str = Field(..., description="Display name of the user")
    timezone: str | None = Field(default=None, description="IANA time zone; unset means the configured default")
    created: datetime = Field(..., description="Registration timestamp (UTC)")

    @field_validator("name")
    @classmethod
    def validate_name_usable(cls, v: str) -> str:
        """Validate name is non-empty and not too long."""
        v = v.strip()
        if not v:
            raise ValueError("Name cannot be empty")
        if len(v) > MAX_NAME_LENGTH:
            raise ValueError(f"Name too long (max {MAX_NAME_LENGTH} characters)")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str | None) -> str | None:
        """Validate the time zone is a known IANA name."""
        return _validate_timezone_name(v)


class UserCreate(BaseModel):
    """Input for registering a user."""

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    timezone: str | None = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str | None) -> str | None:
        """Validate the time zone is a known IANA name."""
        return _validate_timezone_name(v)
