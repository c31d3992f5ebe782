from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)


class SigningAlgorithm(str, Enum):
    """HMAC JWS algorithms a deployment may pin. ``none`` is never accepted."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


# Well-known endpoints; client credentials come from OAUTH_PROVIDERS
OAUTH_PROVIDER_DEFAULTS: dict[str, dict[str, str]] = {
    "google": {
        "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "authorize_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "authorize_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/oidc/userinfo",
        "scope": "openid email profile",
    },
}


class OAuthProviderConfig(BaseModel):
    """Identity provider endpoints and client credentials."""

    authorize_url: str
    token_url: str
    userinfo_url: Optional[str] = None
    client_id: str
    client_secret: Optional[str] = None
    scope: str = "openid email profile"
    redirect_uri: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token, session and OAuth handling."""

    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes secret requirements and cookie flags for local testing.",
    )
    # Signing
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET")
    jwt_key_id: str = env_field("k1", "JWT_KEY_ID")
    jwt_previous_secrets: dict[str, str] = env_field(
        {},
        "JWT_PREVIOUS_SECRETS",
        description="Retired signing keys accepted for verification only, as kid:secret pairs.",
    )
    jwt_algorithm: SigningAlgorithm = env_field(SigningAlgorithm.HS256, "JWT_ALGORITHM")
    jwt_issuer: str = env_field("sessionward", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionward-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(14, "REFRESH_TOKEN_TTL_DAYS")
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS")
    allowed_claims: list[str] = env_field(
        ["role", "email", "tenant_id"],
        "ALLOWED_CLAIMS",
        description="Identity claims copied into tokens; anything else is dropped.",
    )
    # Sessions
    session_idle_timeout_minutes: int = env_field(30, "SESSION_IDLE_TIMEOUT_MINUTES")
    session_absolute_timeout_minutes: int = env_field(
        12 * 60, "SESSION_ABSOLUTE_TIMEOUT_MINUTES"
    )
    session_bind_ip: bool = env_field(
        False,
        "SESSION_BIND_IP",
        description="Include the client IP in the session fingerprint.",
    )
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    # CSRF
    csrf_tokens_per_session: int = env_field(5, "CSRF_TOKENS_PER_SESSION")
    csrf_token_ttl_minutes: int = env_field(12 * 60, "CSRF_TOKEN_TTL_MINUTES")
    # OAuth
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    oauth_redirect_uri: Optional[str] = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_providers: dict[str, OAuthProviderConfig] = env_field(
        {},
        "OAUTH_PROVIDERS",
        description="JSON object of provider name to endpoints/credentials.",
    )
    # External call bounds
    hash_timeout_seconds: float = env_field(2.0, "HASH_TIMEOUT_SECONDS")
    upstream_timeout_seconds: float = env_field(10.0, "UPSTREAM_TIMEOUT_SECONDS")
    reaper_interval_seconds: int = env_field(300, "REAPER_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_algorithm", mode="before")
    @classmethod
    def _validate_algorithm(cls, value: Any) -> SigningAlgorithm:
        if isinstance(value, str):
            value = value.strip().upper()
        try:
            return SigningAlgorithm(value)
        except ValueError as exc:
            raise ValueError(f"unsupported signing algorithm: {value!r}") from exc

    @field_validator("jwt_previous_secrets", mode="before")
    @classmethod
    def _parse_previous_secrets(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        parsed: dict[str, str] = {}
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            kid, sep, secret = item.partition(":")
            if not sep or not kid or not secret:
                raise ValueError("JWT_PREVIOUS_SECRETS entries must be kid:secret")
            parsed[kid.strip()] = secret.strip()
        return parsed

    @field_validator("allowed_claims", mode="before")
    @classmethod
    def _parse_allowed_claims(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("oauth_providers", mode="before")
    @classmethod
    def _parse_oauth_providers(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = json.loads(value) if value.strip() else {}
        if not isinstance(value, dict):
            raise ValueError("OAUTH_PROVIDERS must be a JSON object")
        merged: dict[str, Any] = {}
        for name, cfg in value.items():
            if isinstance(cfg, OAuthProviderConfig):
                merged[name] = cfg
                continue
            base = dict(OAUTH_PROVIDER_DEFAULTS.get(name, {}))
            base.update(cfg or {})
            merged[name] = base
        return merged

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "session_idle_timeout_minutes",
        "session_absolute_timeout_minutes",
        "csrf_tokens_per_session",
        "csrf_token_ttl_minutes",
        "oauth_state_ttl_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("clock_skew_seconds")
    @classmethod
    def _bounded_skew(cls, value: int) -> int:
        if value < 0 or value > 300:
            raise ValueError("clock skew must be between 0 and 300 seconds")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.test_mode:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        # Ephemeral key: tokens do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_generated", reason="test_mode")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    def signing_keys(self) -> dict[str, str]:
        """All keys accepted for verification, keyed by ``kid``."""
        keys = dict(self.jwt_previous_secrets)
        keys[self.jwt_key_id] = self.jwt_secret or ""
        return keys


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
