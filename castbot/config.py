"""
Application configuration using Pydantic Settings.
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    telegram_bot_token: str = ""
    telegram_api_url: str = "https://api.telegram.org"
    telegram_webhook_secret: Optional[str] = None

    neynar_api_key: str = ""
    neynar_client_id: Optional[str] = None
    neynar_api_url: str = "https://api.neynar.com/v2"
    http_timeout_seconds: float = 20.0

    # Developer account that requests signers on behalf of users
    farcaster_developer_mnemonic: Optional[str] = None
    app_fid: Optional[int] = None
    key_request_deadline_seconds: int = 86400

    database_path: str = "/data/castbot.db"

    approval_poll_interval_seconds: float = 15.0
    approval_poll_max_attempts: int = 20
    signer_sweep_interval_seconds: float = 300.0
    feed_digest_interval_seconds: float = 0.0
    cursor_ttl_seconds: int = 3600
    feed_page_size: int = 10

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
