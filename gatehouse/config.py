from __future__ import annotations

import os
from typing import Any, Iterator, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)

# Startup aborts when any of these is unset or empty
REQUIRED_ENV_VARS = (
    "GITHUB_CLIENT_ID",
    "GITHUB_CLIENT_SECRET",
    "GITHUB_REDIRECT_URI",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_REDIRECT_URI",
    "REDIS_URL",
    "REDIS_PASSWORD",
    "COOKIE_DOMAIN",
)


class ConfigurationError(RuntimeError):
    """Raised when required environment configuration is missing."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(
            "missing required environment variables: " + ", ".join(self.missing)
        )


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _env_names(model: type[BaseModel]) -> Iterator[tuple[str, str]]:
    """Yield ``(field_name, ENV_NAME)`` pairs declared through :func:`env_field`."""
    for name, field in model.model_fields.items():
        extra = field.json_schema_extra
        env_name = extra.get("env") if isinstance(extra, dict) else None
        yield name, env_name or name.upper()


class Settings(BaseModel):
    """Runtime settings resolved from the environment and an optional ``.env`` file."""

    github_client_id: Optional[str] = env_field(None, "GITHUB_CLIENT_ID")
    github_client_secret: Optional[str] = env_field(None, "GITHUB_CLIENT_SECRET")
    github_redirect_uri: Optional[str] = env_field(None, "GITHUB_REDIRECT_URI")
    google_client_id: Optional[str] = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: Optional[str] = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: Optional[str] = env_field(None, "GOOGLE_REDIRECT_URI")

    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    redis_password: Optional[str] = env_field(None, "REDIS_PASSWORD")
    redis_connect_retries: int = env_field(5, "REDIS_CONNECT_RETRIES", ge=1)
    redis_connect_delay_seconds: float = env_field(5.0, "REDIS_CONNECT_DELAY_SECONDS", ge=0)
    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    database_pool_min_size: int = env_field(2, "DATABASE_POOL_MIN_SIZE", ge=1)
    database_pool_max_size: int = env_field(10, "DATABASE_POOL_MAX_SIZE", ge=1)

    cookie_domain: Optional[str] = env_field(None, "COOKIE_DOMAIN")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_origin: str = env_field("http://localhost:3000", "CORS_ORIGIN")
    app_url: str = env_field("http://localhost:3000", "APP_URL")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3000, "PORT")

    stripe_secret_key: Optional[str] = env_field(None, "STRIPE_SECRET_KEY")
    stripe_publishable_key: Optional[str] = env_field(None, "STRIPE_PUBLISHABLE_KEY")
    stripe_webhook_secret: Optional[str] = env_field(None, "STRIPE_WEBHOOK_SECRET")
    stripe_price_id: Optional[str] = env_field(None, "STRIPE_PRICE_ID")
    stripe_api_version: str = env_field("2023-10-16", "STRIPE_API_VERSION")

    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``os.environ``, falling back to a local ``.env`` file."""
        dotenv = dotenv_values(".env")
        values: dict[str, str] = {}
        for name, env_name in _env_names(cls):
            raw = os.environ.get(env_name, dotenv.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator("cors_origin", "app_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator(
        "github_client_id",
        "github_client_secret",
        "github_redirect_uri",
        "google_client_id",
        "google_client_secret",
        "google_redirect_uri",
        "redis_url",
        "redis_password",
        "cookie_domain",
        "stripe_secret_key",
        "stripe_webhook_secret",
    )
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    def missing_required(self) -> List[str]:
        """Return the names of required startup variables that are not set."""
        missing = [
            env_name
            for name, env_name in _env_names(type(self))
            if env_name in REQUIRED_ENV_VARS and not getattr(self, name)
        ]
        return sorted(missing, key=REQUIRED_ENV_VARS.index)

    def ensure_required(self) -> "Settings":
        missing = self.missing_required()
        if missing:
            logger.error("required_env_missing", missing=missing)
            raise ConfigurationError(missing)
        for env_name in REQUIRED_ENV_VARS:
            logger.info("env_configured", name=env_name)
        return self

    @property
    def billing_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    def oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str], Optional[str]]:
        """Return ``(client_id, client_secret, redirect_uri)`` for an OAuth provider."""
        if provider == "github":
            return self.github_client_id, self.github_client_secret, self.github_redirect_uri
        if provider == "google":
            return self.google_client_id, self.google_client_secret, self.google_redirect_uri
        return None, None, None


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings_cache() -> None:
    global _settings
    _settings = None
