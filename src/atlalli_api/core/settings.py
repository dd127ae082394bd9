from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./atlalli.db"
    ledger_backend: Literal["memory", "sql"] = "sql"
    database_auto_create: bool = False

    # Redemption protocol
    redemption_refresh_window_seconds: int = Field(default=30, ge=2)
    static_link_max_age_seconds: int = 60
    public_base_url: str = "http://localhost:3000"
    default_locale: str = "en-US"

    # Venue signing secrets
    venue_secrets: dict[str, str] = Field(default_factory=dict)
    venue_secrets_path: str | None = None
    venue_secret_cache_ttl_seconds: int = 300

    @field_validator("venue_secrets", mode="before")
    @classmethod
    def _drop_blank_secrets(cls, value: object) -> object:
        if isinstance(value, dict):
            return {str(key): str(secret) for key, secret in value.items() if secret}
        return value

    # Staff / internal API security
    staff_api_key: str = ""

    # Vault configuration
    vault_addr: str | None = None
    vault_token: str | None = None
    vault_namespace: str | None = None
    vault_timeout_seconds: float = 5.0
    vault_venue_secret_mount_path: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
