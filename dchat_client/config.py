"""Client settings.

Settings are loaded from environment variables (or a .env file) with
defaults suitable for a local relay peer.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Configuration for the chat client and its local cache."""

    # Relay peers hosting the replicated graph
    peers: List[str] = Field(default=["http://localhost:8765"], alias="DCHAT_PEERS")
    request_timeout: float = Field(default=5.0, alias="DCHAT_REQUEST_TIMEOUT")

    # Local durable cache
    storage_dir: str = Field(default="client_data", alias="DCHAT_STORAGE_DIR")
    storage_quota_bytes: int = Field(default=5 * 1024 * 1024, alias="DCHAT_STORAGE_QUOTA_BYTES")

    # Directory lookups (seconds)
    resolve_attempts: int = Field(default=5, alias="DCHAT_RESOLVE_ATTEMPTS")
    resolve_base_delay: float = Field(default=0.7, alias="DCHAT_RESOLVE_BASE_DELAY")
    resolve_growth: float = Field(default=1.2, alias="DCHAT_RESOLVE_GROWTH")
    resolve_max_delay: float = Field(default=2.0, alias="DCHAT_RESOLVE_MAX_DELAY")
    resolve_min_timeout: float = Field(default=0.9, alias="DCHAT_RESOLVE_MIN_TIMEOUT")

    # Attachments
    max_file_bytes: int = Field(default=5 * 1024 * 1024, alias="DCHAT_MAX_FILE_BYTES")

    log_level: str = Field(default="WARNING", alias="DCHAT_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )


def get_settings() -> ClientSettings:
    return ClientSettings()
