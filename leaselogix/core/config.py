from functools import lru_cache
import os
from typing import List, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False
    project_name: str = "LeaseLogix API"
    environment: str = "development"
    log_level: str = "INFO"

    # Raw CORS origins string - read from env
    cors_origins_raw: Optional[str] = Field(
        default=None,
        alias="CORS_ORIGINS"
    )

    @computed_field
    @property
    def backend_cors_origins(self) -> List[str]:
        """Parse CORS_ORIGINS from environment variable (comma-separated string)."""
        raw = self.cors_origins_raw
        if not raw:
            raw = os.environ.get("CORS_ORIGINS") or ""

        if not raw or not raw.strip():
            return []

        origins = []
        for origin in raw.split(","):
            origin = origin.strip().rstrip("/")
            if origin:
                origins.append(origin)
        return origins

    database_url: str  # Required - no default, must be set in .env

    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 12

    # Invitations
    frontend_base_url: str = "http://localhost:3000"
    invitation_ttl_days: float = 7
    invitation_resend_interval_hours: float = 24
    invitation_resend_max: int = 5

    # Outbound email. Without smtp_host mail is written to the log instead.
    email_from: str = "noreply@leaselogix.app"
    email_from_name: str = "LeaseLogix"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True

    # Gmail OAuth2 (XOAUTH2). Takes precedence over smtp_password when set.
    gmail_client_id: Optional[str] = None
    gmail_client_secret: Optional[str] = None
    gmail_refresh_token: Optional[str] = None
    gmail_token_url: str = "https://oauth2.googleapis.com/token"
    # Google access tokens live for an hour; the cached transport must expire first
    email_transport_ttl_seconds: int = 50 * 60

    sms_twilio_account_sid: Optional[str] = None
    sms_twilio_auth_token: Optional[str] = None
    sms_twilio_from_number: Optional[str] = None

    # Retry policy for email/SMS
    transport_max_attempts: int = 3
    transport_backoff_seconds: float = 0.5

    # Public invite endpoints are unauthenticated
    public_invite_rate_limit: str = "30/minute"
    rate_limit_storage_uri: str = "memory://"

    @property
    def gmail_oauth_enabled(self) -> bool:
        return bool(self.gmail_client_id and self.gmail_client_secret and self.gmail_refresh_token)

    def invitation_link(self, token: str) -> str:
        return f"{self.frontend_base_url.rstrip('/')}/accept-invite/{token}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
