"""Application configuration using pydantic-settings."""

from typing import Any

from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from services.credential_manager import CREDENTIAL_KEYS, get_credential


class KeychainSettingsSource(PydanticBaseSettingsSource):
    """Load credential fields from the OS keychain via ``keyring``.

    Only fields whose uppercase name appears in
    :data:`~services.credential_manager.CREDENTIAL_KEYS` are looked up.
    All other fields return ``None`` so the next source in the chain
    handles them.
    """

    def get_field_value(
        self, field: FieldInfo, field_name: str
    ) -> tuple[Any, str, bool]:
        env_name = field_name.upper()
        if env_name not in CREDENTIAL_KEYS:
            return None, field_name, False
        value = get_credential(env_name)
        return value, field_name, False

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for field_name, field_info in self.settings_cls.model_fields.items():
            value, key, is_complex = self.get_field_value(field_info, field_name)
            if value is not None:
                d[key] = value
        return d


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            KeychainSettingsSource(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    # Database
    DATABASE_URL: str = "sqlite:///./open_finance.db"

    # Pluggy credentials (keychain or environment)
    PLUGGY_CLIENT_ID: str = ""
    PLUGGY_CLIENT_SECRET: str = ""
    PLUGGY_BASE_URL: str = "https://api.pluggy.ai"
    PLUGGY_OAUTH_REDIRECT_URL: str = "pocket://oauth-callback"
    PLUGGY_WEBHOOK_URL: str = ""
    PLUGGY_TIMEOUT_SECONDS: float = 30.0

    # Belvo credentials (keychain or environment)
    BELVO_SECRET_ID: str = ""
    BELVO_SECRET_PASSWORD: str = ""
    BELVO_BASE_URL: str = "https://sandbox.belvo.com"
    BELVO_WIDGET_CALLBACK_URL: str = "pocket://belvo-callback"
    BELVO_TIMEOUT_SECONDS: float = 30.0

    # Aggregator used when a request does not name one
    DEFAULT_AGGREGATOR: str = "Pluggy"

    # Status polling (15 attempts x 2s ~= 30s)
    POLL_MAX_ATTEMPTS: int = 15
    POLL_INTERVAL_MS: int = 2000

    # Reconciliation
    SYNC_LOOKBACK_DAYS: int = 90
    SYNC_MAX_WORKERS: int = 1

    @field_validator("POLL_MAX_ATTEMPTS", "SYNC_MAX_WORKERS")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Reject zero or negative attempt/worker counts."""
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("POLL_INTERVAL_MS")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        """Reject negative poll intervals."""
        if v < 0:
            raise ValueError(f"POLL_INTERVAL_MS must be >= 0, got {v}")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize LOG_LEVEL to an uppercase Python logging level."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()

    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"


settings = Settings()
