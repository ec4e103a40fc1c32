"""Configuration package."""

from teamledger.config.settings import (
    AppSettings,
    DatabaseSettings,
    EmailSettings,
    GoogleSheetsSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "EmailSettings",
    "GoogleSheetsSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
