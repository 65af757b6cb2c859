"""Configuration management for commitbet."""

from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # SQLite Configuration
    sqlite_db_path: str = Field(default="./data/commitbet.db", description="Path to the SQLite database file")

    # Pydantic Logfire Configuration (optional)
    logfire_token: str | None = Field(default=None, description="Pydantic Logfire token for observability")
    environment: str = Field(default="development", description="Deployment environment reported to Logfire")

    # Ledger Configuration
    initial_balance: Decimal = Field(
        default=Decimal("1000"), ge=0, description="Virtual funds credited to a ledger when it is opened"
    )
    max_deposit_per_call: Decimal = Field(
        default=Decimal("10000"), gt=0, description="Largest amount accepted by a single deposit"
    )

    # Time Zone Configuration
    default_timezone: str = Field(default="UTC", description="IANA zone used for users without a stored time zone")

    @field_validator("default_timezone")
    @classmethod
    def validate_default_timezone(cls, v: str) -> str:
        """Validate the default time zone is a known IANA name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            msg = f"Unknown time zone: {v}"
            raise ValueError(msg) from e
        return v

    def require_credential(self, field_name: str, service_name: str) -> str:
        """Validate that a required credential is set, raising a clear error if missing.

        Args:
            field_name: Name of the field to check
            service_name: Human-readable service name for error message

        Returns:
            The credential value

        Raises:
            ValueError: If the credential is None or empty
        """
        value = getattr(self, field_name)
        if not value:
            raise ValueError(
                f"{service_name} credential not configured. "
                f"Set {field_name.upper()} environment variable or add to .env file."
            )
        return value


# Application Constants
class Constants:
    """Application-wide constants."""

    # Stake limits
    BET_AMOUNT_MIN: Decimal = Decimal("1")
    BET_AMOUNT_MAX: Decimal = Decimal("10000")

    # Text limits
    TITLE_MAX_LENGTH: int = 200
    DESCRIPTION_MAX_LENGTH: int = 1000
    JUDGE_COMMENT_MAX_LENGTH: int = 1000
    EVIDENCE_DESCRIPTION_MAX_LENGTH: int = 2000

    # Recurrence
    OCCURRENCES_MIN: int = 1
    OCCURRENCES_MAX: int = 365
    MAX_GENERATION_RANGE_DAYS: int = 62  # Two calendar months

    # Pagination Defaults
    TRANSACTIONS_PAGE_SIZE: int = 20
    SCAN_PAGE_SIZE: int = 500  # Page size when a service must see every matching row


def get_settings() -> Settings:
    """Get application settings (singleton pattern)."""
    return Settings()


# Global settings instance
settings = get_settings()
