"""Configuration management using Pydantic Settings."""

from typing import Literal, Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

GMAIL_READONLY_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"


def resolve_redirect_uri(app_url: str, provider_type: str) -> str:
    """Build the OAuth callback URL for a provider type from the public app URL."""
    return f"{app_url.rstrip('/')}/api/v1/email/callback/{provider_type}"


class AppConfig(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    env: Literal["development", "production", "testing"] = Field(default="development", alias="APP_ENV")
    debug: bool = Field(default=False, alias="APP_DEBUG")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(default="json", alias="LOG_FORMAT")

    # Public base URL of this service, used for OAuth redirects
    app_url: str = Field(default="http://localhost:8080", alias="APP_URL")
    # Where the browser lands after the OAuth callback
    frontend_url: str = Field(default="http://localhost:3000", alias="FRONTEND_URL")


class GoogleOAuthConfig(BaseSettings):
    """Google OAuth client used by the Gmail adapter."""

    model_config = SettingsConfigDict(extra="ignore")

    client_id: str = Field(default="", alias="GOOGLE_CLIENT_ID")
    client_secret: SecretStr = Field(default=SecretStr(""), alias="GOOGLE_CLIENT_SECRET")
    redirect_uri: Optional[str] = Field(default=None, alias="GOOGLE_REDIRECT_URI")
    auth_uri: str = "https://accounts.google.com/o/oauth2/auth"
    token_uri: str = "https://oauth2.googleapis.com/token"
    scopes_raw: str = Field(default=GMAIL_READONLY_SCOPE, alias="GMAIL_SCOPES")

    @property
    def scopes(self) -> list[str]:
        """OAuth scopes parsed from the comma-separated setting."""
        return [scope.strip() for scope in self.scopes_raw.split(",") if scope.strip()]

    @property
    def is_configured(self) -> bool:
        """True when both client id and secret are present."""
        return bool(self.client_id) and bool(self.client_secret.get_secret_value())


class RedisConfig(BaseSettings):
    """Redis configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    key_prefix: str = Field(default="receiptsync", alias="REDIS_KEY_PREFIX")
    oauth_state_ttl_seconds: int = Field(default=600, alias="OAUTH_STATE_TTL")
    cancel_flag_ttl_seconds: int = Field(default=86400, alias="CANCEL_FLAG_TTL")


class SyncConfig(BaseSettings):
    """Sync job configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    # Bound used when a sync request carries no (or a zero) limit
    default_page_size: int = Field(default=50, ge=1, alias="SYNC_DEFAULT_PAGE_SIZE")
    # Largest page the Gmail list endpoint accepts
    max_page_size: int = Field(default=500, ge=1, alias="SYNC_MAX_PAGE_SIZE")
    max_limit: int = Field(default=1000, ge=1, alias="SYNC_MAX_LIMIT")

    search_max_attempts: int = Field(default=3, ge=1, alias="SYNC_SEARCH_MAX_ATTEMPTS")
    fetch_max_attempts: int = Field(default=3, ge=1, alias="SYNC_FETCH_MAX_ATTEMPTS")
    retry_backoff_base: float = Field(default=1.0, ge=0.0, alias="SYNC_RETRY_BACKOFF_BASE")
    retry_backoff_max: float = Field(default=30.0, ge=0.0, alias="SYNC_RETRY_BACKOFF_MAX")

    max_concurrent_jobs: int = Field(default=4, ge=1, alias="SYNC_MAX_CONCURRENT_JOBS")
    disconnect_wait_seconds: float = Field(default=10.0, ge=0.0, alias="SYNC_DISCONNECT_WAIT")


class ExtractionConfig(BaseSettings):
    """Receipt extraction configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    backend: Literal["heuristic", "anthropic"] = Field(default="heuristic", alias="EXTRACTION_BACKEND")
    # Per-message budget for one extraction call
    timeout_seconds: float = Field(default=60.0, gt=0.0, alias="EXTRACTION_TIMEOUT")

    anthropic_api_key: SecretStr = Field(default=SecretStr(""), alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field(default="claude-sonnet-4-5-20250929", alias="ANTHROPIC_MODEL")
    max_tokens: int = Field(default=1024, alias="EXTRACTION_MAX_TOKENS")

    max_body_chars: int = Field(default=20000, alias="EXTRACTION_MAX_BODY_CHARS")
    max_attachment_size_mb: int = Field(default=10, alias="EXTRACTION_MAX_ATTACHMENT_SIZE_MB")
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0, alias="EXTRACTION_MIN_CONFIDENCE")
    default_currency: str = Field(default="USD", alias="DEFAULT_CURRENCY")


class AdminConfig(BaseSettings):
    """API access configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    api_key: SecretStr = Field(default=SecretStr(""), alias="ADMIN_API_KEY")
    port: int = Field(default=8080, alias="ADMIN_PORT")
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:8080",
        alias="ADMIN_CORS_ORIGINS",
    )

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated origins."""
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


class Settings(BaseSettings):
    """Master settings combining all configuration sections."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppConfig = Field(default_factory=AppConfig)
    google: GoogleOAuthConfig = Field(default_factory=GoogleOAuthConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)

    @model_validator(mode="after")
    def fill_redirect_uri(self) -> "Settings":
        """Derive the Gmail redirect URI from APP_URL when not set explicitly."""
        if not self.google.redirect_uri:
            self.google.redirect_uri = resolve_redirect_uri(self.app.app_url, "gmail")
        return self


# Global settings instance
settings = Settings()
