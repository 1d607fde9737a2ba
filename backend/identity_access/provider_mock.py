"""
Deterministic in-process provider simulator.

Why: Tests and local development must run full OAuth flows without network
access. `MockProviderClient` satisfies the same `ProviderClient` protocol as
the live adapter, so the orchestrator cannot tell them apart.

Behavior:
- `build_authorization_url` remembers the PKCE challenge and redirect URI per
  state; `authorize(state, user_id)` plays the user's consent and returns a
  one-time authorization code. `consent_redirect` does the same and returns
  the provider redirect (`redirect_uri?code=..&state=..`) for the dev-mode
  consent route.
- Pending authorizations expire like flow states (600 s) and are capped at
  `max_pending`; the oldest entry is dropped first.
- Issued tokens are deterministic: `mock_<provider>_access_<user>_<n>` and
  `mock_<provider>_refresh_<user>_<n>`.
- Failure modes are scripted explicitly (`fail_next`, `omit_refresh_token`,
  `reported_scopes`, `owner_email_override`).
"""
from __future__ import annotations

from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, Optional, Sequence, Set, Tuple
import itertools
import threading
import time
from urllib.parse import urlencode

from .domain import OAuthProvider, ProviderTokenPair, ProviderUserInfo, TokenInfo
from .errors import ProviderError
from .oidc import code_challenge_s256
from .stores import DEFAULT_TTLS, RecordKind


DEFAULT_EXPIRES_IN = 3600


def _now() -> float:
    return time.time()


@dataclass(frozen=True)
class MockUser:
    id: str
    email: str
    name: str = ""
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class _PendingAuthorization:
    scopes: Tuple[str, ...]
    redirect_uri: str
    code_challenge: Optional[str]
    expires_at: float


@dataclass(frozen=True)
class _Grant:
    user: MockUser
    scopes: Tuple[str, ...]
    redirect_uri: Optional[str]
    code_challenge: Optional[str]
    scripted: Optional[ProviderTokenPair] = None


@dataclass
class _IssuedToken:
    user_id: str
    email: Optional[str]
    scopes: Tuple[str, ...]
    expires_in: int = DEFAULT_EXPIRES_IN


@dataclass
class MockProviderClient:
    """Scriptable stand-in for a provider's OAuth endpoints."""

    provider: OAuthProvider = OAuthProvider.GOOGLE
    email_lookup: Optional[Callable[[str], Optional[str]]] = None
    auth_endpoint: str = "https://mock.idgate.local/oauth/authorize"
    expires_in: int = DEFAULT_EXPIRES_IN
    omit_refresh_token: bool = False
    # When set, token info reports these scopes instead of the granted ones.
    reported_scopes: Optional[Tuple[str, ...]] = None
    # When set, ownership checks see this email as the token owner.
    owner_email_override: Optional[str] = None
    users: Dict[str, MockUser] = field(default_factory=dict)
    pending_ttl_seconds: int = DEFAULT_TTLS[RecordKind.FLOW]
    max_pending: int = 10_000

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._pending: "OrderedDict[str, _PendingAuthorization]" = OrderedDict()
        self._codes: Dict[str, _Grant] = {}
        self._access: Dict[str, _IssuedToken] = {}
        self._refresh: Dict[str, _IssuedToken] = {}
        self._revoked: Set[str] = set()
        self._failures: Deque[ProviderError] = deque()
        self.calls: list = []

    # -- scripting ---------------------------------------------------------

    def add_user(self, user_id: str, email: str, name: str = "", avatar_url: Optional[str] = None) -> MockUser:
        if "_" in user_id:
            raise ValueError("mock user ids must not contain underscores")
        user = MockUser(id=user_id, email=email, name=name, avatar_url=avatar_url)
        self.users[user_id] = user
        return user

    def ensure_user(self, email: str, name: str = "") -> MockUser:
        """Return the user registered for `email`, creating one if needed."""
        wanted = email.strip().lower()
        with self._lock:
            for user in self.users.values():
                if user.email.strip().lower() == wanted:
                    return user
            return self.add_user(f"user{next(self._counter)}", email.strip(), name=name or email.split("@")[0])

    def fail_next(self, error: ProviderError) -> None:
        """Make the next provider call raise `error`."""
        with self._lock:
            self._failures.append(error)

    def script_exchange(self, code: str, tokens: ProviderTokenPair) -> None:
        """Make `exchange_code(code, ...)` return `tokens` verbatim (no PKCE check)."""
        email = tokens.user_info.email or ""
        user = MockUser(id=f"scripted{next(self._counter)}", email=email, name=tokens.user_info.name)
        with self._lock:
            self._codes[code] = _Grant(
                user=user,
                scopes=tuple(tokens.scopes),
                redirect_uri=None,
                code_challenge=None,
                scripted=tokens,
            )

    def authorize(self, state: str, user_id: str, *, granted_scopes: Optional[Iterable[str]] = None) -> str:
        """Simulate the user consenting on the provider page; returns the code."""
        code, _ = self._consent(state, user_id, granted_scopes)
        return code

    def consent_redirect(self, state: str, user_id: str) -> str:
        """Consent and return the URL the provider would redirect the browser to."""
        code, redirect_uri = self._consent(state, user_id, None)
        return f"{redirect_uri}?{urlencode({'code': code, 'state': state})}"

    def is_revoked(self, token: str) -> bool:
        with self._lock:
            return token in self._revoked

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # -- ProviderClient ----------------------------------------------------

    def build_authorization_url(
        self,
        *,
        state: str,
        scopes: Sequence[str],
        redirect_uri: str,
        code_challenge: str,
    ) -> str:
        now = _now()
        with self._lock:
            self._prune_pending(now)
            self._pending[state] = _PendingAuthorization(
                scopes=tuple(scopes),
                redirect_uri=redirect_uri,
                code_challenge=code_challenge,
                expires_at=now + self.pending_ttl_seconds,
            )
            while len(self._pending) > self.max_pending:
                self._pending.popitem(last=False)
        params = {
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.auth_endpoint}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str, *, code_verifier: Optional[str] = None) -> ProviderTokenPair:
        self._record("exchange_code")
        with self._lock:
            grant = self._codes.pop(code, None)
        if grant is None:
            raise ProviderError("invalid_grant", retryable=False, status_code=400)
        if grant.redirect_uri is not None and grant.redirect_uri != redirect_uri:
            raise ProviderError("redirect_uri_mismatch", retryable=False, status_code=400)
        if grant.code_challenge is not None:
            if not code_verifier or code_challenge_s256(code_verifier) != grant.code_challenge:
                raise ProviderError("invalid_code_verifier", retryable=False, status_code=400)

        if grant.scripted is not None:
            tokens = grant.scripted
            issued = _IssuedToken(
                user_id=grant.user.id,
                email=tokens.user_info.email,
                scopes=tuple(tokens.scopes),
                expires_in=tokens.expires_in_seconds or self.expires_in,
            )
            with self._lock:
                self._access[tokens.access_token] = issued
                if tokens.refresh_token:
                    self._refresh[tokens.refresh_token] = issued
            if self.omit_refresh_token:
                return ProviderTokenPair(
                    access_token=tokens.access_token,
                    refresh_token=None,
                    expires_in_seconds=tokens.expires_in_seconds,
                    user_info=tokens.user_info,
                    scopes=tokens.scopes,
                )
            return tokens

        access_token, refresh_token = self._issue(grant.user, grant.scopes, with_refresh=not self.omit_refresh_token)
        return ProviderTokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in_seconds=self.expires_in,
            user_info=ProviderUserInfo(
                email=grant.user.email,
                name=grant.user.name,
                avatar_url=grant.user.avatar_url,
            ),
            scopes=grant.scopes,
        )

    def get_token_info(self, access_token: str) -> TokenInfo:
        self._record("get_token_info")
        issued = self._live_access(access_token)
        scopes = self.reported_scopes if self.reported_scopes is not None else issued.scopes
        return TokenInfo(scopes=tuple(scopes), expires_in=issued.expires_in, email=issued.email)

    def verify_token_ownership(self, access_token: str, expected_account_id: str) -> bool:
        self._record("verify_token_ownership")
        issued = self._live_access(access_token)
        if self.email_lookup is None:
            return False
        expected = self.email_lookup(expected_account_id)
        owner = self.owner_email_override or issued.email
        if not expected or not owner:
            return False
        return owner.strip().lower() == expected.strip().lower()

    def refresh_access_token(self, refresh_token: str) -> ProviderTokenPair:
        self._record("refresh_access_token")
        with self._lock:
            issued = self._refresh.get(refresh_token)
            revoked = refresh_token in self._revoked
        if issued is None or revoked:
            raise ProviderError("invalid_grant", retryable=False, status_code=400)
        user = self.users.get(issued.user_id) or MockUser(id=issued.user_id, email=issued.email or "")
        access_token, _ = self._issue(user, issued.scopes, with_refresh=False)
        # Provider keeps the same refresh token.
        return ProviderTokenPair(
            access_token=access_token,
            refresh_token=None,
            expires_in_seconds=self.expires_in,
            user_info=ProviderUserInfo(email=None),
            scopes=issued.scopes,
        )

    def revoke_tokens(self, tokens: Sequence[str]) -> int:
        self._record("revoke_tokens")
        revoked = 0
        with self._lock:
            for token in tokens:
                if not token or token in self._revoked:
                    continue
                if token in self._access or token in self._refresh:
                    self._revoked.add(token)
                    revoked += 1
        if revoked == 0 and any(tokens):
            raise ProviderError("invalid_token", retryable=False, status_code=400)
        return revoked

    # -- internals ---------------------------------------------------------

    def _consent(
        self, state: str, user_id: str, granted_scopes: Optional[Iterable[str]]
    ) -> Tuple[str, str]:
        user = self.users.get(user_id)
        if user is None:
            raise KeyError(user_id)
        with self._lock:
            self._prune_pending(_now())
            pending = self._pending.pop(state, None)
            if pending is None:
                raise KeyError(state)
            code = f"mock_code_{next(self._counter)}"
            scopes = tuple(granted_scopes) if granted_scopes is not None else pending.scopes
            self._codes[code] = _Grant(
                user=user,
                scopes=scopes,
                redirect_uri=pending.redirect_uri,
                code_challenge=pending.code_challenge,
            )
        return code, pending.redirect_uri

    def _prune_pending(self, now: float) -> None:
        # Caller holds the lock.
        expired = [key for key, entry in self._pending.items() if entry.expires_at <= now]
        for key in expired:
            del self._pending[key]

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        with self._lock:
            error = self._failures.popleft() if self._failures else None
        if error is not None:
            raise error

    def _issue(self, user: MockUser, scopes: Tuple[str, ...], *, with_refresh: bool) -> Tuple[str, Optional[str]]:
        n = next(self._counter)
        prefix = f"mock_{self.provider.value}"
        access_token = f"{prefix}_access_{user.id}_{n}"
        refresh_token = f"{prefix}_refresh_{user.id}_{n}" if with_refresh else None
        issued = _IssuedToken(user_id=user.id, email=user.email, scopes=scopes, expires_in=self.expires_in)
        with self._lock:
            self._access[access_token] = issued
            if refresh_token:
                self._refresh[refresh_token] = issued
        return access_token, refresh_token

    def _live_access(self, access_token: str) -> _IssuedToken:
        with self._lock:
            issued = self._access.get(access_token)
            revoked = access_token in self._revoked
        if issued is None or revoked:
            raise ProviderError("invalid_token", retryable=False, status_code=401)
        return issued


__all__ = ["MockProviderClient", "MockUser"]
