"idgate web adapter"
from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from identity_access.accounts import AccountRepository, InMemoryAccountRepository
from identity_access.domain import OAuthProvider
from identity_access.oidc import GoogleProviderClient, ProviderClient, ProviderConfig
from identity_access.orchestrator import AuthOrchestrator
from identity_access.provider_mock import MockProviderClient
from identity_access.scopes import ScopeLedger
from identity_access.stores import StateStore
from identity_access.tokens import TokenService
from web.config import Settings, ensure_secure_config_on_startup
from web.routes.auth import auth_router
from web.routes.mock_provider import mock_provider_router


logger = logging.getLogger("idgate.web")


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out/opt-in via IDGATE_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("IDGATE_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


def _email_lookup(accounts: AccountRepository):
    def lookup(account_id: str) -> Optional[str]:
        account = accounts.find_account_by_id(account_id)
        return account.email if account is not None else None

    return lookup


def build_provider_client(settings: Settings, accounts: AccountRepository) -> ProviderClient:
    if settings.provider_backend == "mock":
        logger.warning("Using the in-process provider simulator (AUTH_PROVIDER_BACKEND=mock)")
        provider = OAuthProvider.GOOGLE
        return MockProviderClient(
            provider=provider,
            email_lookup=_email_lookup(accounts),
            auth_endpoint=f"{settings.app_base_url}/mock/oauth/{provider.value}/authorize",
        )
    cfg = ProviderConfig(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    return GoogleProviderClient(cfg, email_lookup=_email_lookup(accounts))


def build_orchestrator(
    settings: Settings,
    *,
    accounts: AccountRepository,
    provider_client: ProviderClient,
) -> AuthOrchestrator:
    """Construct the store objects once and hand them to the orchestrator."""
    tokens = TokenService(
        settings.jwt_secret,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
    )
    return AuthOrchestrator(
        providers={provider_client.provider: provider_client},
        states=StateStore(max_entries=settings.state_store_max_entries),
        tokens=tokens,
        ledger=ScopeLedger(),
        accounts=accounts,
        callback_base_url=settings.app_base_url,
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    accounts: Optional[AccountRepository] = None,
    provider_client: Optional[ProviderClient] = None,
) -> FastAPI:
    """Application factory (`uvicorn --factory web.main:create_app`).

    Tests pass explicit settings, accounts and a provider double; production
    reads everything from the environment and fails fast on insecure config.
    The simulator consent route is mounted only for the `mock` backend.
    """
    if settings is None:
        if _should_load_dotenv():
            load_dotenv()
        settings = Settings.from_env()
    ensure_secure_config_on_startup(settings)

    accounts = accounts if accounts is not None else InMemoryAccountRepository()
    client = provider_client if provider_client is not None else build_provider_client(settings, accounts)

    app = FastAPI(title="idgate", description="OAuth authentication orchestration", version="0.1.0")
    app.state.settings = settings
    app.state.orchestrator = build_orchestrator(settings, accounts=accounts, provider_client=client)
    app.include_router(auth_router)
    if settings.provider_backend == "mock" and isinstance(client, MockProviderClient):
        app.state.mock_provider = client
        app.include_router(mock_provider_router)
    logger.info(
        "idgate started env=%s provider_backend=%s",
        settings.environment,
        settings.provider_backend,
    )
    return app
