"""
Configuration and startup security checks for idgate.

Why: Signing secrets and provider credentials must never fall back to
development defaults in a deployed environment. `Settings` reads the
environment once; `ensure_secure_config_on_startup` is the single guard that
enforces minimal production safety constraints without burdening local
development.

Permissions: The caller needs no special privileges. The functions simply read
environment variables and raise `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


DEV_JWT_SECRET = "dev-only-secret-change-me"
MIN_SECRET_LENGTH = 32
_PLACEHOLDER_SECRETS = {"", "changeme", "change-me", "secret", DEV_JWT_SECRET}


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise SystemExit(f"Refusing to start: {key} must be an integer (got {raw!r}).")


def _env_flag(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    raw = (env.get(key) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    environment: str = "dev"
    jwt_secret: str = DEV_JWT_SECRET
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 30 * 24 * 3600
    rotate_refresh_tokens: bool = False
    provider_backend: str = "google"
    google_client_id: str = ""
    google_client_secret: str = ""
    app_base_url: str = "http://localhost:8100"
    provider_timeout_seconds: int = 5
    state_store_max_entries: int = 10_000

    @property
    def is_prod_like(self) -> bool:
        return _is_prod_like(self.environment)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            environment=(env.get("IDGATE_ENV") or "dev").strip().lower(),
            jwt_secret=(env.get("JWT_SECRET") or DEV_JWT_SECRET).strip(),
            access_token_ttl_seconds=_env_int(env, "ACCESS_TOKEN_TTL_SECONDS", 3600),
            refresh_token_ttl_seconds=_env_int(env, "REFRESH_TOKEN_TTL_SECONDS", 30 * 24 * 3600),
            rotate_refresh_tokens=_env_flag(env, "ROTATE_REFRESH_TOKENS"),
            provider_backend=(env.get("AUTH_PROVIDER_BACKEND") or "google").strip().lower(),
            google_client_id=(env.get("GOOGLE_CLIENT_ID") or "").strip(),
            google_client_secret=(env.get("GOOGLE_CLIENT_SECRET") or "").strip(),
            app_base_url=(env.get("APP_BASE_URL") or "http://localhost:8100").strip().rstrip("/"),
            provider_timeout_seconds=_env_int(env, "PROVIDER_TIMEOUT_SECONDS", 5),
            state_store_max_entries=_env_int(env, "STATE_STORE_MAX_ENTRIES", 10_000),
        )


def ensure_secure_config_on_startup(settings: Optional[Settings] = None) -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - JWT_SECRET must be set, not a placeholder, and at least 32 characters.
    - The provider simulator (AUTH_PROVIDER_BACKEND=mock) must not run.
    - Google client credentials must be configured.
    - APP_BASE_URL must use https, since provider redirects carry codes.
    """
    settings = settings or Settings.from_env()
    if settings.provider_backend not in ("google", "mock"):
        raise SystemExit(
            f"Refusing to start: unknown AUTH_PROVIDER_BACKEND={settings.provider_backend!r} (use google or mock)."
        )
    if not settings.is_prod_like:
        return  # dev/test remain permissive

    # 1) Signing secret
    secret = settings.jwt_secret
    if secret.lower() in _PLACEHOLDER_SECRETS or secret.upper().startswith("CHANGE_ME"):
        raise SystemExit("Refusing to start: JWT_SECRET is unset or a placeholder in production.")
    if len(secret) < MIN_SECRET_LENGTH:
        raise SystemExit(
            f"Refusing to start: JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters in production."
        )

    # 2) Simulator must never serve real users
    if settings.provider_backend == "mock":
        raise SystemExit(
            "Refusing to start: AUTH_PROVIDER_BACKEND=mock is not allowed in production/staging."
        )

    # 3) Provider credentials
    if not settings.google_client_id or not settings.google_client_secret:
        raise SystemExit(
            "Refusing to start: GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set in production."
        )

    # 4) Redirect URIs must use HTTPS
    if not settings.app_base_url.lower().startswith("https://"):
        raise SystemExit("Refusing to start: APP_BASE_URL must use https in production.")
