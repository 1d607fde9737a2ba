"""
Security config guard tests.

Validates that production/staging environments fail fast on weak signing
secrets, the provider simulator, missing credentials or plain-http redirect
bases, while development stays permissive.
"""
from __future__ import annotations

import pytest

from web import config as cfg
from web.config import Settings, ensure_secure_config_on_startup
from web.main import create_app

STRONG_SECRET = "s" * 48


def _prod(**overrides) -> Settings:
    values = dict(
        environment="prod",
        jwt_secret=STRONG_SECRET,
        provider_backend="google",
        google_client_id="cid",
        google_client_secret="csecret",
        app_base_url="https://idgate.example",
    )
    values.update(overrides)
    return Settings(**values)


def test_from_env_defaults():
    settings = Settings.from_env({})
    assert settings.environment == "dev"
    assert settings.jwt_secret == cfg.DEV_JWT_SECRET
    assert settings.access_token_ttl_seconds == 3600
    assert settings.refresh_token_ttl_seconds == 2592000
    assert settings.rotate_refresh_tokens is False
    assert settings.provider_backend == "google"
    assert settings.app_base_url == "http://localhost:8100"
    assert settings.provider_timeout_seconds == 5
    assert settings.state_store_max_entries == 10000


def test_from_env_reads_overrides():
    settings = Settings.from_env(
        {
            "IDGATE_ENV": "Staging",
            "ROTATE_REFRESH_TOKENS": "true",
            "AUTH_PROVIDER_BACKEND": "MOCK",
            "APP_BASE_URL": "https://idgate.example/",
            "ACCESS_TOKEN_TTL_SECONDS": "600",
        }
    )
    assert settings.is_prod_like
    assert settings.rotate_refresh_tokens is True
    assert settings.provider_backend == "mock"
    assert settings.app_base_url == "https://idgate.example"
    assert settings.access_token_ttl_seconds == 600


def test_from_env_rejects_non_integer_ttl():
    with pytest.raises(SystemExit):
        Settings.from_env({"ACCESS_TOKEN_TTL_SECONDS": "soon"})


def test_dev_allows_defaults():
    ensure_secure_config_on_startup(Settings(provider_backend="mock"))


def test_prod_accepts_secure_settings():
    ensure_secure_config_on_startup(_prod())


@pytest.mark.parametrize(
    "overrides",
    [
        {"jwt_secret": cfg.DEV_JWT_SECRET},
        {"jwt_secret": "CHANGE_ME_PLEASE_" + "x" * 32},
        {"jwt_secret": "short-secret"},
        {"provider_backend": "mock"},
        {"google_client_id": ""},
        {"google_client_secret": ""},
        {"app_base_url": "http://idgate.example"},
        {"environment": "staging", "app_base_url": "http://idgate.example"},
    ],
)
def test_prod_guard_rejects_insecure_settings(overrides):
    with pytest.raises(SystemExit):
        ensure_secure_config_on_startup(_prod(**overrides))


def test_unknown_provider_backend_rejected_everywhere():
    with pytest.raises(SystemExit):
        ensure_secure_config_on_startup(Settings(provider_backend="keycloak"))


def test_guard_reads_environment_when_no_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("IDGATE_ENV", "prod")
    monkeypatch.setenv("JWT_SECRET", cfg.DEV_JWT_SECRET)
    with pytest.raises(SystemExit):
        ensure_secure_config_on_startup()


def test_create_app_refuses_insecure_prod(monkeypatch: pytest.MonkeyPatch):
    with pytest.raises(SystemExit):
        create_app(_prod(provider_backend="mock"))


def test_create_app_wires_live_adapter_by_default():
    app = create_app(Settings(google_client_id="cid", google_client_secret="csecret"))
    result = app.state.orchestrator.initiate("signup", "google", "https://app.example/cb")
    assert result.authorization_url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert "client_id=cid" in result.authorization_url
