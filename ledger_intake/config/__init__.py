"""Configuration package."""

from ledger_intake.config.logging import configure_logging, get_logger
from ledger_intake.config.settings import (
    AppSettings,
    FXSettings,
    GeminiSettings,
    LedgerSettings,
    Settings,
    StagingSettings,
    StorageSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "FXSettings",
    "GeminiSettings",
    "LedgerSettings",
    "Settings",
    "StagingSettings",
    "StorageSettings",
    "configure_logging",
    "get_logger",
    "get_settings",
    "validate_all_settings",
]
