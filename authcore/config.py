from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

HMAC_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})
ASYMMETRIC_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512", "EdDSA"}
)
# Shared secrets shorter than this are rejected for HMAC signing
MIN_HMAC_SECRET_LENGTH = 32


class RevocationBackend(str, Enum):
    """Where revoked access-token identifiers are kept."""

    REDIS = "redis"
    MEMORY = "memory"
    POSTGRES = "postgres"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-start configuration for the auth core; immutable at runtime."""

    database_url: str = env_field(
        "postgresql://localhost:5432/recipe_book", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    revocation_backend: RevocationBackend = env_field(
        RevocationBackend.REDIS,
        "REVOCATION_BACKEND",
        description="redis (native TTL), memory, or postgres (swept table)",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use synchronous Redis client and relaxed startup checks",
    )
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_issuer: str = env_field("recipe-book", "JWT_ISSUER")
    jwt_audience: str = env_field("recipe-book-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        gt=0,
        le=24 * 60,
        description="Access tokens live for hours, not days",
    )
    refresh_token_ttl_minutes: int = env_field(
        72 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", ge=8, description="KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    password_hash_workers: int = env_field(
        4,
        "PASSWORD_HASH_WORKERS",
        ge=1,
        description="Threads reserved for password hashing",
    )
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    revoke_on_refresh_reuse: bool = env_field(
        False,
        "REVOKE_ON_REFRESH_REUSE",
        description="Delete the user's refresh record when a mismatching token is presented",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("revocation_backend")
    @classmethod
    def _validate_revocation_backend(cls, value: RevocationBackend) -> RevocationBackend:
        return RevocationBackend(value)

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        if value not in HMAC_ALGORITHMS | ASYMMETRIC_ALGORITHMS:
            raise ValueError(f"unsupported JWT algorithm '{value}'")
        return value

    @model_validator(mode="after")
    def _ensure_key_material(self) -> "Settings":
        if self.jwt_algorithm in HMAC_ALGORITHMS:
            if not self.jwt_secret or len(self.jwt_secret) < MIN_HMAC_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be set and at least {MIN_HMAC_SECRET_LENGTH} characters "
                    f"for {self.jwt_algorithm}"
                )
        elif not (self.jwt_private_key_path and self.jwt_public_key_path):
            raise ValueError(
                f"JWT_PRIVATE_KEY_PATH and JWT_PUBLIC_KEY_PATH are required for {self.jwt_algorithm}"
            )
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            logger.warning(
                "refresh_ttl_not_longer_than_access_ttl",
                access_token_ttl_minutes=self.access_token_ttl_minutes,
                refresh_token_ttl_minutes=self.refresh_token_ttl_minutes,
            )
        return self


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
