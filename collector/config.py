"""Configuration management for the metering-data collector."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional
from pathlib import Path
import os


def load_secrets_file(secrets_path: str = ".secrets") -> dict:
    """Load secrets from a separate secrets file.

    The secrets file uses the same format as .env files.
    Returns a dict of key-value pairs.
    """
    secrets = {}

    paths_to_check = [
        Path(secrets_path),
        Path("/app/.secrets"),
        Path.home() / ".secrets",
    ]

    for path in paths_to_check:
        if path.exists():
            with open(path, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if "=" in line:
                        key, value = line.split("=", 1)
                        secrets[key.strip()] = value.strip()
            break  # Use first secrets file found

    return secrets


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase (PostgREST)
    supabase_url: str = Field(default="http://localhost:54321", alias="SUPABASE_URL")
    supabase_service_role_key: str = Field(default="", alias="SUPABASE_SERVICE_ROLE_KEY")
    supabase_timeout: float = Field(default=30.0, alias="SUPABASE_TIMEOUT")

    # Enedis Data Connect
    enedis_base_url: str = Field(default="https://gw.ext.prod.api.enedis.fr", alias="ENEDIS_BASE_URL")
    enedis_client_id: str = Field(default="", alias="ENEDIS_CLIENT_ID")
    enedis_client_secret: str = Field(default="", alias="ENEDIS_CLIENT_SECRET")
    enedis_scope: Optional[str] = Field(default=None, alias="ENEDIS_SCOPE")
    enedis_timeout: float = Field(default=30.0, alias="ENEDIS_TIMEOUT")
    enedis_retry_attempts: int = Field(default=3, alias="ENEDIS_RETRY_ATTEMPTS")

    # Pause between load curve segments (seconds)
    enedis_segment_pause: float = Field(default=0.2, alias="ENEDIS_SEGMENT_PAUSE")

    # Token cache: a stored token is reused until expires_at - margin
    token_expiry_margin_s: int = Field(default=120, alias="TOKEN_EXPIRY_MARGIN_S")
    token_history_keep: int = Field(default=5, alias="TOKEN_HISTORY_KEEP")
    token_retry_attempts: int = Field(default=3, alias="TOKEN_RETRY_ATTEMPTS")

    # Switchgrid consent broker
    switchgrid_base_url: str = Field(default="https://app.switchgrid.tech/enedis/v2", alias="SWITCHGRID_BASE_URL")
    # Access token loaded from .secrets file, not environment
    switchgrid_token: Optional[str] = Field(default=None, alias="SWITCHGRID_TOKEN")
    switchgrid_timeout: float = Field(default=30.0, alias="SWITCHGRID_TIMEOUT")
    switchgrid_poll_attempts: int = Field(default=60, alias="SWITCHGRID_POLL_ATTEMPTS")
    switchgrid_poll_interval: float = Field(default=3.0, alias="SWITCHGRID_POLL_INTERVAL")
    switchgrid_retry_attempts: int = Field(default=3, alias="SWITCHGRID_RETRY_ATTEMPTS")

    # Timezone in which day boundaries and off-peak windows are defined
    tz: str = Field(default="Europe/Paris", alias="METER_TZ")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def enedis_token_url(self) -> str:
        """OAuth2 client-credentials endpoint."""
        return f"{self.enedis_base_url}/oauth2/v3/token"

    @property
    def supabase_rest_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1"


def create_settings() -> Settings:
    """Create settings instance, loading secrets from .secrets file."""
    secrets = load_secrets_file()

    # For secrets we want the .secrets file to be authoritative
    for key, value in secrets.items():
        if key.endswith("_SECRET") or key.endswith("_TOKEN") or key.endswith("_KEY"):
            os.environ[key] = value

    return Settings()


# Global settings instance
settings = create_settings()
