"""Relay peer settings, loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelaySettings(BaseSettings):
    database_url: str = Field(default="sqlite+aiosqlite:///./relay.db", alias="RELAY_DATABASE_URL")
    host: str = Field(default="0.0.0.0", alias="RELAY_HOST")
    port: int = Field(default=8765, alias="RELAY_PORT")
    log_level: str = Field(default="INFO", alias="RELAY_LOG_LEVEL")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)
