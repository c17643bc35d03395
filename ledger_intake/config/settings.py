"""
Configuration for Ledger Intake.

Each concern reads its own environment prefix through pydantic-settings
(GEMINI_, STAGING_, LEDGER_, FX_, STORAGE_, plus unprefixed app options).

DESIGN DECISION: All configuration is centralized here, but components
never call get_settings() themselves. The factory in orchestrator.py reads
the settings once and hands each component the sub-settings it needs, so
tests can construct isolated configurations (e.g. a different signing
secret or default vault) without touching the environment.
"""

from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GeminiSettings(BaseSettings):
    """Extraction model. Only needed when the LLM path is enabled."""

    model_config = SettingsConfigDict(env_prefix="GEMINI_", extra="ignore")

    api_key: str = Field(..., description="Google AI Studio key")
    model_name: str = Field(default="gemini-2.0-flash")
    max_tokens: int = Field(
        default=4096,
        ge=256,
        le=8192,
        description="Cap on output tokens; a 5-row enrichment chunk fits well under it"
    )
    # Extraction should be repeatable for the same message
    temperature: float = Field(default=0.1, ge=0.0, le=1.0)
    # A hung LLM call must never block an ingestion request
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Per-attempt timeout for one LLM call"
    )


class StagingSettings(BaseSettings):
    """Pending-action staging and signed delivery configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STAGING_",
        extra="ignore"
    )

    signing_secret: SecretStr = Field(
        ...,
        description="Shared HMAC secret between the staging boundary and its consumer"
    )
    default_extraction_confidence: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Extraction confidence assumed when the LLM does not report one"
    )

    @field_validator('signing_secret')
    @classmethod
    def validate_signing_secret(cls, v: SecretStr) -> SecretStr:
        """An empty secret would make every signature trivially forgeable."""
        if not v.get_secret_value().strip():
            raise ValueError("signing_secret must not be empty")
        return v


class LedgerSettings(BaseSettings):
    """Ledger routing, vault and timezone configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        extra="ignore"
    )

    default_spending_vault: str = Field(
        default="Spend",
        description="Vault that spend-class actions withdraw from"
    )
    default_income_vault: str = Field(
        default="Income",
        description="Vault that income-class actions deposit into"
    )
    borrowings_vault: str = Field(
        default="Borrowings",
        description="Vault that tracks borrowed money"
    )
    overdraft_vaults: str = Field(
        default="Borrowings",
        description="Comma-separated vault names allowed to go negative"
    )
    default_currency: str = Field(
        default="VND",
        min_length=3,
        max_length=5,
        description="Currency assumed when the input does not name one"
    )
    timezone: str = Field(
        default="Asia/Ho_Chi_Minh",
        description="Timezone used to default missing dates to 'today'"
    )
    batch_approval_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Default confidence threshold for bulk approval"
    )

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @field_validator('default_currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def overdraft_vault_names(self) -> frozenset[str]:
        """Get overdraft-enabled vaults as a set."""
        return frozenset(
            name.strip() for name in self.overdraft_vaults.split(",") if name.strip()
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class FXSettings(BaseSettings):
    """Exchange-rate and asset-price provider configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FX_",
        extra="ignore"
    )

    base_url: str = Field(
        default="https://api.exchangerate-api.com/v4/latest",
        description="Fiat exchange-rate endpoint; the base currency is appended"
    )
    api_key: Optional[SecretStr] = Field(
        default=None,
        description="Optional exchangerate-api key (switches to the v6 endpoint)"
    )
    price_base_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        description="Crypto/asset price API root"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Timeout for one provider request"
    )


class StorageSettings(BaseSettings):
    """Persistence configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        extra="ignore"
    )

    database_path: str = Field(
        default="ledger_intake.db",
        description="Path to the SQLite database file"
    )
    busy_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long a writer waits for the database lock"
    )


class AppSettings(BaseSettings):
    """Unprefixed process options: logging and the grounding cache."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR)$",
        description="Minimum log level"
    )
    log_format: str = Field(
        default="console",
        pattern="^(json|console)$",
        description="Log renderer"
    )

    # Grounding cache
    grounding_ttl_seconds: int = Field(
        default=300,
        ge=0,
        description="How long an accounts/tags snapshot is served before refresh"
    )
    grounding_tags: str = Field(
        default="Food,Transport,Shopping,Bills,Health,Entertainment,Salary,Investment,Transfer",
        description="Comma-separated tag names offered to the extractor"
    )

    @property
    def grounding_tags_list(self) -> list[str]:
        """Get grounding tags as a list."""
        return [tag.strip() for tag in self.grounding_tags.split(",") if tag.strip()]


class Settings(BaseSettings):
    """
    Entry point for all configuration groups.

    Each group is built on access, so a CLI command that never touches the
    LLM does not need GEMINI_API_KEY to be set.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def staging(self) -> StagingSettings:
        return StagingSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def fx(self) -> FXSettings:
        return FXSettings()

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings; tests call get_settings.cache_clear() after changing env."""
    return Settings()


SETTING_GROUPS = ("gemini", "staging", "ledger", "fx", "storage", "app")


def validate_all_settings() -> dict[str, bool]:
    """
    Try to load every settings group.

    Maps each group name to whether it loaded; failures also get a
    "<name>_error" entry with the validation message. Run by the CLI
    `check` command before serving.
    """
    settings = get_settings()
    results = {}

    for name in SETTING_GROUPS:
        try:
            getattr(settings, name)
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)
        else:
            results[name] = True

    return results
