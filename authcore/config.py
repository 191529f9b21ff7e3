from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_KEY_LENGTH = 32


class HashAlgorithm(str, Enum):
    """Password hashing schemes; the tag is embedded in every stored hash."""

    ARGON2ID = "argon2id"
    BCRYPT = "bcrypt"


class SigningAlgorithm(str, Enum):
    """HMAC variants accepted for session token signatures."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


class RevocationBackend(str, Enum):
    """Where revoked token ids are kept.

    - MEMORY: lock-striped set local to this process
    - REDIS: shared set visible to every instance pointing at the same Redis
    """

    MEMORY = "memory"
    REDIS = "redis"


# Defaults per algorithm when WORK_FACTOR is not set explicitly
DEFAULT_WORK_FACTORS: dict[str, int] = {
    HashAlgorithm.ARGON2ID.value: 3,
    HashAlgorithm.BCRYPT.value: 12,
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and token authority."""

    # Password hashing
    password_algorithm: HashAlgorithm = env_field(
        HashAlgorithm.ARGON2ID, "PASSWORD_ALGORITHM"
    )
    work_factor: int | None = env_field(
        None,
        "WORK_FACTOR",
        description="argon2id time cost or bcrypt log2 rounds; defaults per algorithm",
    )
    argon2_memory_cost_kib: int = env_field(65536, "ARGON2_MEMORY_COST_KIB", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)
    max_password_length: int = env_field(
        256,
        "MAX_PASSWORD_LENGTH",
        ge=1,
        description="Longest accepted raw password, in characters",
    )

    # Session tokens
    secret_key: str | None = env_field(None, "SECRET_KEY", validate_default=True)
    signing_algorithm: SigningAlgorithm = env_field(
        SigningAlgorithm.HS256, "SIGNING_ALGORITHM"
    )
    token_issuer: str = env_field("authcore", "TOKEN_ISSUER")
    token_audience: str = env_field("authcore-clients", "TOKEN_AUDIENCE")
    token_ttl_seconds: int = env_field(15 * 60, "TOKEN_TTL_SECONDS", gt=0)
    max_token_ttl_seconds: int = env_field(24 * 60 * 60, "MAX_TOKEN_TTL_SECONDS", gt=0)
    clock_skew_tolerance_seconds: int = env_field(
        30, "CLOCK_SKEW_TOLERANCE_SECONDS", ge=0
    )

    # CSRF transport names
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Revocation bookkeeping
    revocation_backend: RevocationBackend = env_field(
        RevocationBackend.MEMORY, "REVOCATION_BACKEND"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    revocation_shards: int = env_field(16, "REVOCATION_SHARDS", ge=1)
    revocation_prune_interval_seconds: int = env_field(
        60, "REVOCATION_PRUNE_INTERVAL_SECONDS", gt=0
    )

    # Credential store
    store_timeout_seconds: float = env_field(2.0, "STORE_TIMEOUT_SECONDS", gt=0)
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="Directory for JSON snapshots of the in-memory stores",
    )

    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

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

    @field_validator("password_algorithm")
    @classmethod
    def _validate_password_algorithm(cls, value: HashAlgorithm) -> HashAlgorithm:
        return HashAlgorithm(value)

    @field_validator("signing_algorithm")
    @classmethod
    def _validate_signing_algorithm(cls, value: SigningAlgorithm) -> SigningAlgorithm:
        return SigningAlgorithm(value)

    @field_validator("revocation_backend")
    @classmethod
    def _validate_revocation_backend(cls, value: RevocationBackend) -> RevocationBackend:
        return RevocationBackend(value)

    @field_validator("secret_key")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_SECRET_KEY_LENGTH:
                raise ValueError(
                    f"SECRET_KEY must be at least {MIN_SECRET_KEY_LENGTH} characters"
                )
            return value
        # Tokens signed with a generated key do not survive a restart
        logger.warning(
            "secret_key_generated",
            message="SECRET_KEY not set; issued tokens are only valid for this process",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.token_ttl_seconds > self.max_token_ttl_seconds:
            raise ValueError("TOKEN_TTL_SECONDS cannot exceed MAX_TOKEN_TTL_SECONDS")
        factor = self.effective_work_factor
        if self.password_algorithm == HashAlgorithm.BCRYPT and not 4 <= factor <= 31:
            raise ValueError("bcrypt WORK_FACTOR must be between 4 and 31")
        if self.password_algorithm == HashAlgorithm.ARGON2ID and factor < 1:
            raise ValueError("argon2id WORK_FACTOR must be at least 1")
        if self.argon2_memory_cost_kib < 8 * self.argon2_parallelism:
            raise ValueError("ARGON2_MEMORY_COST_KIB must be at least 8 * ARGON2_PARALLELISM")
        return self

    @property
    def effective_work_factor(self) -> int:
        if self.work_factor is not None:
            return self.work_factor
        return DEFAULT_WORK_FACTORS[self.password_algorithm.value]

    @property
    def secret_key_bytes(self) -> bytes:
        return self.secret_key.encode("utf-8")


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
