"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
provide the explicit collaborators the orchestrator is built from.
"""
import sys
from pathlib import Path

import pytest

# Ensure modules in backend/ are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(BACKEND_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from identity_access.accounts import InMemoryAccountRepository  # noqa: E402
from identity_access.domain import OAuthProvider  # noqa: E402
from identity_access.orchestrator import AuthOrchestrator  # noqa: E402
from identity_access.provider_mock import MockProviderClient  # noqa: E402
from identity_access.scopes import ScopeLedger  # noqa: E402
from identity_access.stores import StateStore  # noqa: E402
from identity_access.tokens import TokenService  # noqa: E402


TEST_SECRET = "test-secret-0123456789-abcdefghijklmnop"
APP_BASE = "https://idgate.test"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Controllable wall clock shared by the state store and token service."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr("identity_access.stores._now", lambda: fake.now)
    monkeypatch.setattr("identity_access.tokens._now", lambda: int(fake.now))
    monkeypatch.setattr("identity_access.provider_mock._now", lambda: fake.now)
    return fake


@pytest.fixture
def accounts() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def provider(accounts: InMemoryAccountRepository) -> MockProviderClient:
    def lookup(account_id):
        account = accounts.find_account_by_id(account_id)
        return account.email if account else None

    mock = MockProviderClient(provider=OAuthProvider.GOOGLE, email_lookup=lookup)
    mock.add_user("alice", "alice@example.com", name="Alice Example")
    mock.add_user("bob", "bob@example.com", name="Bob Example")
    return mock


@pytest.fixture
def token_service() -> TokenService:
    return TokenService(TEST_SECRET)


@pytest.fixture
def orchestrator(provider, accounts, token_service) -> AuthOrchestrator:
    return AuthOrchestrator(
        providers={OAuthProvider.GOOGLE: provider},
        states=StateStore(max_entries=1000),
        tokens=token_service,
        ledger=ScopeLedger(),
        accounts=accounts,
        callback_base_url=APP_BASE,
    )
