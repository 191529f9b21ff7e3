"""Tests for Settings validation and environment loading."""

import pytest
from pydantic import ValidationError

from authcore.config import (
    HashAlgorithm,
    RevocationBackend,
    Settings,
    SigningAlgorithm,
    get_settings,
    reset_settings_cache,
)

VALID_SECRET = "x" * 40


class TestSettingsValidation:
    def test_defaults(self):
        settings = Settings(secret_key=VALID_SECRET)

        assert settings.password_algorithm == HashAlgorithm.ARGON2ID
        assert settings.signing_algorithm == SigningAlgorithm.HS256
        assert settings.revocation_backend == RevocationBackend.MEMORY
        assert settings.effective_work_factor == 3
        assert settings.token_ttl_seconds == 900
        assert settings.secret_key_bytes == VALID_SECRET.encode()

    def test_bcrypt_default_work_factor(self):
        settings = Settings(secret_key=VALID_SECRET, password_algorithm="bcrypt")

        assert settings.effective_work_factor == 12

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(secret_key="too-short")

    def test_missing_secret_is_generated(self):
        first = Settings()
        second = Settings()

        assert len(first.secret_key) >= 32
        assert first.secret_key != second.secret_key

    def test_ttl_cannot_exceed_maximum(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=VALID_SECRET, token_ttl_seconds=7200, max_token_ttl_seconds=3600)

    def test_ttl_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=VALID_SECRET, token_ttl_seconds=0)

    @pytest.mark.parametrize("factor", [3, 32])
    def test_bcrypt_work_factor_bounds(self, factor):
        with pytest.raises(ValidationError):
            Settings(secret_key=VALID_SECRET, password_algorithm="bcrypt", work_factor=factor)

    def test_argon2_work_factor_positive(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=VALID_SECRET, work_factor=0)

    def test_argon2_memory_must_cover_parallelism(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=VALID_SECRET, argon2_memory_cost_kib=16, argon2_parallelism=4)

    def test_unknown_algorithm_rejected(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=VALID_SECRET, signing_algorithm="RS256")


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", VALID_SECRET)
        monkeypatch.setenv("PASSWORD_ALGORITHM", "bcrypt")
        monkeypatch.setenv("WORK_FACTOR", "10")
        monkeypatch.setenv("TOKEN_TTL_SECONDS", "600")
        monkeypatch.setenv("REVOCATION_BACKEND", "redis")

        settings = Settings.from_env()

        assert settings.password_algorithm == HashAlgorithm.BCRYPT
        assert settings.effective_work_factor == 10
        assert settings.token_ttl_seconds == 600
        assert settings.revocation_backend == RevocationBackend.REDIS

    def test_get_settings_is_cached(self, monkeypatch):
        monkeypatch.setenv("TOKEN_TTL_SECONDS", "120")
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("TOKEN_TTL_SECONDS", "240")

        assert get_settings() is first
        assert first.token_ttl_seconds == 120

        reset_settings_cache()
        assert get_settings().token_ttl_seconds == 240
