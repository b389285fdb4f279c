"""Application configuration management."""

import hashlib
import os
import secrets
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


# Fallback session secret when no encryption key exists yet (per process)
_fallback_session_secret: Optional[str] = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    database_path: str = "/data/labcal.db"

    # Encryption
    encryption_key_file: str = "/secrets/encryption.key"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Session
    session_secret_key: Optional[str] = None  # Derived from encryption key if not set
    session_expire_days: int = 7

    # Google OAuth client
    google_client_id: str = ""
    google_client_secret: str = ""
    oauth_redirect_path: str = "/auth/calendar/callback"
    oauth_state_ttl_minutes: int = 10

    # Token lifecycle
    token_refresh_margin_minutes: int = 5
    token_refresh_max_attempts: int = 3
    token_refresh_job_minutes: int = 30
    provider_timeout_seconds: float = 30.0

    # Sync settings
    sync_interval_minutes: int = 60
    sync_window_past_days: int = 183
    sync_window_future_days: int = 365
    sync_max_attempts: int = 3
    sync_retry_backoff_seconds: float = 1.0

    # Webhooks
    enable_webhooks: bool = True
    webhook_channel_ttl_hours: int = 144
    webhook_renewal_window_hours: int = 24
    webhook_renewal_interval_hours: int = 24

    # Secret store
    secret_store_max_versions: int = 5

    # Credential migration
    migration_cleanup_confirmation: str = "DELETE_FIRESTORE_TOKENS"

    # Rate limiting
    rate_limit_per_minute: int = 60
    webhook_rate_limit_per_minute: int = 120

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.public_url.rstrip('/')}{self.oauth_redirect_path}"

    @property
    def webhook_url(self) -> str:
        return f"{self.public_url.rstrip('/')}/api/webhooks/google-calendar"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_encryption_key() -> bytes:
    """Load encryption key from file."""
    settings = get_settings()
    key_file = settings.encryption_key_file

    if not os.path.exists(key_file):
        raise RuntimeError(f"Encryption key file not found at {key_file}")

    with open(key_file, "rb") as f:
        key = f.read()
        # Only strip trailing newlines; a general strip() can corrupt binary keys
        while key and key[-1:] in (b"\n", b"\r"):
            key = key[:-1]

    if len(key) < 32:
        raise RuntimeError("Invalid encryption key: must be at least 32 bytes")

    return key


def get_session_secret() -> str:
    """Get session secret key, derived from encryption key if not set."""
    settings = get_settings()
    if settings.session_secret_key:
        return settings.session_secret_key

    try:
        key = get_encryption_key()
        return hashlib.sha256(key + b"session_secret").hexdigest()
    except RuntimeError:
        global _fallback_session_secret
        if _fallback_session_secret is None:
            _fallback_session_secret = secrets.token_urlsafe(32)
        return _fallback_session_secret
