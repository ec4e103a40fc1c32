"""
Configuration Management for TeamLedger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store configuration (any SQLAlchemy URL)."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///teamledger.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets audit log configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class EmailSettings(BaseSettings):
    """SMTP configuration for outgoing notifications."""

    model_config = SettingsConfigDict(
        env_prefix="SMTP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    enabled: bool = Field(
        default=False,
        description="Send emails at all (disabled emails are only logged)"
    )
    host: str = Field(default="localhost")
    port: int = Field(default=587, ge=1, le=65535)
    username: str = Field(default="")
    password: str = Field(default="")
    use_tls: bool = Field(
        default=True,
        description="Upgrade the connection with STARTTLS"
    )
    from_address: str = Field(
        default="TeamLedger <no-reply@teamledger.local>",
        description="From header for every outgoing email"
    )
    timeout_seconds: float = Field(default=10.0, gt=0)


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Team settings
    allowed_currencies: str = Field(
        default="VND,USD,EUR,JPY",
        description="Comma-separated list of accepted currency codes"
    )
    default_currency: str = Field(default="USD")
    max_team_name_length: int = Field(default=50, ge=1, le=200)

    # Pagination
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)

    # Validation thresholds
    max_transaction_amount: float = Field(
        default=1_000_000_000.0,
        description="Largest single transaction amount accepted"
    )
    future_date_tolerance_days: int = Field(
        default=7,
        description="How many days in the future a transaction date can be"
    )
    min_password_length: int = Field(default=8, ge=1)

    # Tokens
    invitation_ttl_days: int = Field(
        default=7,
        ge=1,
        description="How long a team invitation can be accepted"
    )
    password_reset_ttl_minutes: int = Field(
        default=60,
        ge=1,
        description="How long a password reset link stays valid"
    )

    # Notifications
    budget_alert_threshold: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Share of the budget spent that triggers a budget alert"
    )

    @property
    def currency_list(self) -> list[str]:
        """Get allowed currencies as an upper-cased list."""
        return [c.strip().upper() for c in self.allowed_currencies.split(",") if c.strip()]


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def email(self) -> EmailSettings:
        return EmailSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus "<name>_error"
    entries for the sections that failed. Useful for startup checks.
    """
    results = {}
    settings = get_settings()

    for name in ("database", "google_sheets", "email", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
