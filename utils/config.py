from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


PLACEHOLDER_SECRETS = {"change-me", "changeme", "secret", "jwt-secret", "your-secret-key"}


class ConfigurationError(RuntimeError):
    """The configured settings cannot run the service safely."""


class Settings(BaseSettings):
    """Runtime configuration, read from the environment and ``.env``."""

    # Supabase / Postgres
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None

    # Session tokens
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "zoom-insights"
    jwt_audience: str = "zoom-insights-api"
    jwt_expiration_minutes: int = 60 * 24 * 7
    jwt_refresh_expiration_days: int = 30

    # Zoom
    zoom_client_id: Optional[str] = None
    zoom_client_secret: Optional[str] = None
    zoom_redirect_uri: Optional[str] = None
    zoom_api_base_url: str = "https://api.zoom.us/v2"
    zoom_oauth_base_url: str = "https://zoom.us/oauth"
    zoom_request_timeout: float = 30.0
    zoom_download_timeout: float = 300.0
    zoom_token_refresh_leeway: int = 60
    zoom_rate_limit_retries: int = 3
    zoom_rate_limit_backoff: float = 2.0
    oauth_state_ttl_seconds: int = 600

    # LLM
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 2000
    openai_temperature: float = 0.3

    # Notifications
    slack_bot_token: Optional[str] = None
    # Channel told about each newly synced meeting; unset disables it.
    slack_new_meeting_channel: Optional[str] = None
    slack_api_url: str = "https://slack.com/api"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None

    # HTTP / storage
    frontend_url: str = "http://localhost:3000"
    max_upload_size: int = 50_000_000
    storage_dir: str = "uploads"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def validate_secrets(self) -> None:
        """Refuse to sign sessions with a missing or placeholder secret."""
        secret = (self.jwt_secret or "").strip()
        if not secret:
            raise ConfigurationError("JWT_SECRET must be set")
        if secret.lower() in PLACEHOLDER_SECRETS:
            raise ConfigurationError("JWT_SECRET is a placeholder value, set a random secret")

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.frontend_url.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
