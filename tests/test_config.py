"""
tests/test_config.py -- Settings validation (core/config.py).

Settings are constructed directly (not via the cached get_settings()) so each
test controls its own environment through monkeypatch.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings, get_settings

KEY = "k" * 40


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in ("DEBUG", "SECRET_KEY", "REFRESH_SECRET_KEY", "RESET_SECRET_KEY", "BCRYPT_ROUNDS"):
        monkeypatch.delenv(name, raising=False)


def test_production_requires_secret_key() -> None:
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(_env_file=None)


def test_debug_generates_secret_key() -> None:
    settings = Settings(_env_file=None, debug=True)
    assert len(settings.secret_key) >= 32


def test_short_keys_rejected() -> None:
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(_env_file=None, secret_key="short")
    with pytest.raises(ValidationError, match="REFRESH_SECRET_KEY"):
        Settings(_env_file=None, secret_key=KEY, refresh_secret_key="short")


def test_refresh_and_reset_secrets_fall_back() -> None:
    settings = Settings(_env_file=None, secret_key=KEY)
    assert settings.effective_refresh_secret == KEY
    assert settings.effective_reset_secret == KEY
    separate = Settings(_env_file=None, secret_key=KEY, refresh_secret_key="r" * 40)
    assert separate.effective_refresh_secret == "r" * 40


def test_secret_fallbacks_are_logged(monkeypatch, caplog) -> None:
    monkeypatch.setenv("SECRET_KEY", KEY)
    caplog.set_level("WARNING", logger="fieldtrack.config")
    # __wrapped__ bypasses the lru_cache so the shared singleton is untouched.
    get_settings.__wrapped__()
    assert "REFRESH_SECRET_KEY not set" in caplog.text
    assert "RESET_SECRET_KEY not set" in caplog.text

    caplog.clear()
    monkeypatch.setenv("RESET_SECRET_KEY", "z" * 40)
    get_settings.__wrapped__()
    assert "RESET_SECRET_KEY not set" not in caplog.text


def test_env_vars_are_read(monkeypatch) -> None:
    monkeypatch.setenv("SECRET_KEY", KEY)
    monkeypatch.setenv("OTP_TTL_SECONDS", "120")
    monkeypatch.setenv("BCRYPT_ROUNDS", "5")
    settings = Settings(_env_file=None)
    assert settings.otp_ttl_seconds == 120
    assert settings.bcrypt_rounds == 5


@pytest.mark.parametrize("rounds", [3, 32])
def test_bcrypt_rounds_bounds(rounds: int) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, secret_key=KEY, bcrypt_rounds=rounds)
