"""Application settings loaded from environment variables.

Environment Configuration:
    STASH_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: Database connection string (required)
    BASE_URL: Public origin of the app, used for OAuth redirect URIs

Auth Configuration:
    AUTH_SECRET: Secret for merge tickets and OAuth state tokens
                 (required in staging/prod, >= 32 chars)
    GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET: Google OAuth app credentials
    GITHUB_CLIENT_ID / GITHUB_CLIENT_SECRET: GitHub OAuth app credentials

Note: A provider is only offered for sign-in or merge when both its
client id and client secret are set.
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

# Fixed secret for local/test so tickets and state tokens work out of the box
DEV_AUTH_SECRET = "stash-dev-auth-secret-do-not-use-in-prod"
MIN_AUTH_SECRET_LENGTH = 32

# Providers the application knows how to talk to
ALLOWED_PROVIDERS = ("google", "github")


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - DATABASE_URL is always required
    - AUTH_SECRET is required in staging and prod only
    - Rate limit maximums and windows must be >= 1
    """

    stash_env: Environment = Field(default=Environment.LOCAL, alias="STASH_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]
    base_url: str = Field(default="http://localhost:8000", alias="BASE_URL")

    # Auth
    auth_secret: str | None = Field(default=None, alias="AUTH_SECRET")
    session_ttl_s: int = Field(default=7 * 24 * 3600, alias="SESSION_TTL_S")
    login_path: str = Field(default="/login", alias="LOGIN_PATH")
    settings_path: str = Field(default="/settings", alias="SETTINGS_PATH")

    # OAuth providers
    google_client_id: str | None = Field(default=None, alias="GOOGLE_CLIENT_ID")
    google_client_secret: str | None = Field(default=None, alias="GOOGLE_CLIENT_SECRET")
    github_client_id: str | None = Field(default=None, alias="GITHUB_CLIENT_ID")
    github_client_secret: str | None = Field(default=None, alias="GITHUB_CLIENT_SECRET")
    oauth_http_timeout_s: float = Field(default=10.0, alias="OAUTH_HTTP_TIMEOUT_S")

    # Account merge
    # Direct merge folds the owner of any (provider, accountId) into the
    # caller without proving the caller controls that external account.
    # Anyone who learns an account id can absorb its owner. Turn this off
    # to leave only the ticket flow, which re-authenticates with the provider.
    direct_merge_enabled: bool = Field(default=True, alias="DIRECT_MERGE_ENABLED")

    # Rate limits (fixed window, per process)
    rate_limit_account_max: int = Field(default=10, alias="RATE_LIMIT_ACCOUNT_MAX")
    rate_limit_account_window_s: int = Field(default=60, alias="RATE_LIMIT_ACCOUNT_WINDOW_S")
    rate_limit_upload_user_max: int = Field(default=10, alias="RATE_LIMIT_UPLOAD_USER_MAX")
    rate_limit_upload_user_window_s: int = Field(
        default=60, alias="RATE_LIMIT_UPLOAD_USER_WINDOW_S"
    )
    rate_limit_upload_ip_max: int = Field(default=20, alias="RATE_LIMIT_UPLOAD_IP_MAX")
    rate_limit_upload_ip_window_s: int = Field(default=60, alias="RATE_LIMIT_UPLOAD_IP_WINDOW_S")
    rate_limit_bookmark_max: int = Field(default=30, alias="RATE_LIMIT_BOOKMARK_MAX")
    rate_limit_bookmark_window_s: int = Field(default=60, alias="RATE_LIMIT_BOOKMARK_WINDOW_S")

    # File storage
    storage_dir: str | None = Field(default=None, alias="STORAGE_DIR")
    max_file_bytes: int = Field(default=5 * 1024 * 1024, alias="MAX_FILE_BYTES")  # 5 MB
    max_files_per_user: int = Field(default=10, alias="MAX_FILES_PER_USER")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure secrets and limits are sane for the environment."""
        if self.stash_env in (Environment.STAGING, Environment.PROD):
            if not self.auth_secret:
                raise ValueError(f"AUTH_SECRET is required for STASH_ENV={self.stash_env.value}")

        if self.auth_secret is not None and len(self.auth_secret) < MIN_AUTH_SECRET_LENGTH:
            raise ValueError(
                f"AUTH_SECRET must be at least {MIN_AUTH_SECRET_LENGTH} characters"
            )

        bad_limits = [
            name
            for name in (
                "RATE_LIMIT_ACCOUNT_MAX",
                "RATE_LIMIT_ACCOUNT_WINDOW_S",
                "RATE_LIMIT_UPLOAD_USER_MAX",
                "RATE_LIMIT_UPLOAD_USER_WINDOW_S",
                "RATE_LIMIT_UPLOAD_IP_MAX",
                "RATE_LIMIT_UPLOAD_IP_WINDOW_S",
                "RATE_LIMIT_BOOKMARK_MAX",
                "RATE_LIMIT_BOOKMARK_WINDOW_S",
            )
            if getattr(self, name.lower()) < 1
        ]
        if bad_limits:
            raise ValueError(f"{', '.join(bad_limits)} must be >= 1")

        return self

    @property
    def effective_auth_secret(self) -> str:
        """Return AUTH_SECRET, falling back to the dev secret outside staging/prod."""
        return self.auth_secret or DEV_AUTH_SECRET

    @property
    def cookies_secure(self) -> bool:
        """Whether cookies should carry the Secure attribute."""
        return self.base_url.lower().startswith("https://")

    @property
    def configured_providers(self) -> list[str]:
        """Providers from the allow-list that have credentials configured."""
        configured = []
        for provider in ALLOWED_PROVIDERS:
            client_id = getattr(self, f"{provider}_client_id")
            client_secret = getattr(self, f"{provider}_client_secret")
            if client_id and client_secret:
                configured.append(provider)
        return configured

    def provider_credentials(self, provider: str) -> tuple[str, str] | None:
        """Return (client_id, client_secret) for a provider, or None if unset."""
        if provider not in ALLOWED_PROVIDERS:
            return None
        client_id = getattr(self, f"{provider}_client_id")
        client_secret = getattr(self, f"{provider}_client_secret")
        if not client_id or not client_secret:
            return None
        return client_id, client_secret


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
