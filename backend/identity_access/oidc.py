"""
Provider client seam and the live Google adapter.

Why: Keep web framework independent business logic in a separate module. The
orchestrator only talks to the `ProviderClient` protocol, so the concrete
vendor adapter and the deterministic simulator are interchangeable.

Security:
- Uses PKCE (S256) parameters; the caller stores the code_verifier in its
  server-side flow state.
- Every network call carries an explicit timeout. Timeouts, connection
  failures and 5xx responses surface as retryable `ProviderError`s; 4xx and
  malformed payloads are terminal. Retrying is the caller's decision.
- Never log tokens or authorization codes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Sequence
import base64
import hashlib
import logging
import os
from urllib.parse import urlencode

# Small indirection to ease monkeypatching in tests
import requests as http

from .domain import FlowKind, OAuthProvider, ProviderTokenPair, ProviderUserInfo, TokenInfo
from .errors import ProviderError


logger = logging.getLogger("idgate.identity_access.oidc")

DEFAULT_TIMEOUT_SECONDS = 5


def http_post(url: str, data: Dict[str, str], headers: Dict[str, str], timeout: float = DEFAULT_TIMEOUT_SECONDS):
    return http.post(url, data=data, headers=headers, timeout=timeout)


def http_get(
    url: str,
    params: Optional[Dict[str, str]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
):
    return http.get(url, params=params, headers=headers, timeout=timeout)


def generate_code_verifier(length: int = 64) -> str:
    """Generate a high-entropy URL-safe code_verifier.

    Note: RFC suggests length between 43 and 128 characters.
    """
    return base64.urlsafe_b64encode(os.urandom(length)).decode("ascii").rstrip("=")


def code_challenge_s256(code_verifier: str) -> str:
    """Derive S256 code challenge from verifier."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def callback_uri(base_url: str, flow_kind: FlowKind, provider: OAuthProvider) -> str:
    """Server-side redirect URI registered with the provider for a flow kind."""
    return f"{base_url.rstrip('/')}/oauth/{flow_kind.value}/callback/{provider.value}"


class ProviderClient(Protocol):
    """Capabilities the orchestrator needs from an identity provider."""

    provider: OAuthProvider

    def build_authorization_url(
        self,
        *,
        state: str,
        scopes: Sequence[str],
        redirect_uri: str,
        code_challenge: str,
    ) -> str:
        ...

    def exchange_code(self, code: str, redirect_uri: str, *, code_verifier: Optional[str] = None) -> ProviderTokenPair:
        ...

    def get_token_info(self, access_token: str) -> TokenInfo:
        ...

    def verify_token_ownership(self, access_token: str, expected_account_id: str) -> bool:
        ...

    def refresh_access_token(self, refresh_token: str) -> ProviderTokenPair:
        ...

    def revoke_tokens(self, tokens: Sequence[str]) -> int:
        ...


@dataclass(frozen=True)
class ProviderConfig:
    client_id: str
    client_secret: str
    auth_endpoint: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint: str = "https://oauth2.googleapis.com/token"
    tokeninfo_endpoint: str = "https://www.googleapis.com/oauth2/v3/tokeninfo"
    userinfo_endpoint: str = "https://www.googleapis.com/oauth2/v2/userinfo"
    revoke_endpoint: str = "https://oauth2.googleapis.com/revoke"
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


class GoogleProviderClient:
    """Live adapter for Google's OAuth 2.0 endpoints.

    `email_lookup` resolves an account id to the email the account was
    created with; it is the only link to account storage and is used by
    `verify_token_ownership`.
    """

    provider = OAuthProvider.GOOGLE

    def __init__(self, config: ProviderConfig, *, email_lookup: Callable[[str], Optional[str]]):
        self.cfg = config
        self._email_lookup = email_lookup

    def build_authorization_url(
        self,
        *,
        state: str,
        scopes: Sequence[str],
        redirect_uri: str,
        code_challenge: str,
    ) -> str:
        """Return the authorization URL for the given scopes.

        Offline access and forced consent make the provider return a refresh
        token on every grant; incremental grants keep earlier scopes.
        """
        params = {
            "response_type": "code",
            "client_id": self.cfg.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.cfg.auth_endpoint}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str, *, code_verifier: Optional[str] = None) -> ProviderTokenPair:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.cfg.client_id,
            "client_secret": self.cfg.client_secret,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        body = self._send(
            "token_exchange",
            lambda: http_post(self.cfg.token_endpoint, data=data, headers=_FORM_HEADERS, timeout=self.cfg.timeout_seconds),
        )
        access_token = body.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ProviderError("token_exchange_missing_access_token", retryable=False)
        user_info = self._user_info(access_token)
        return ProviderTokenPair(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or None,
            expires_in_seconds=_as_int(body.get("expires_in")),
            user_info=user_info,
            scopes=_split_scopes(body.get("scope")),
        )

    def get_token_info(self, access_token: str) -> TokenInfo:
        body = self._send(
            "token_info",
            lambda: http_get(
                self.cfg.tokeninfo_endpoint,
                params={"access_token": access_token.strip()},
                timeout=self.cfg.timeout_seconds,
            ),
        )
        return TokenInfo(
            scopes=_split_scopes(body.get("scope")),
            expires_in=_as_int(body.get("expires_in")),
            email=body.get("email") or None,
        )

    def verify_token_ownership(self, access_token: str, expected_account_id: str) -> bool:
        expected_email = self._email_lookup(expected_account_id)
        if not expected_email:
            return False
        info = self._user_info(access_token)
        if not info.email:
            return False
        return info.email.strip().lower() == expected_email.strip().lower()

    def refresh_access_token(self, refresh_token: str) -> ProviderTokenPair:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token.strip(),
            "client_id": self.cfg.client_id,
            "client_secret": self.cfg.client_secret,
        }
        body = self._send(
            "token_refresh",
            lambda: http_post(self.cfg.token_endpoint, data=data, headers=_FORM_HEADERS, timeout=self.cfg.timeout_seconds),
        )
        access_token = body.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ProviderError("token_refresh_missing_access_token", retryable=False)
        return ProviderTokenPair(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or None,
            expires_in_seconds=_as_int(body.get("expires_in")),
            user_info=ProviderUserInfo(email=None),
            scopes=_split_scopes(body.get("scope")),
        )

    def revoke_tokens(self, tokens: Sequence[str]) -> int:
        """Revoke each token; returns how many the provider accepted.

        Raises the first failure when none were revoked.
        """
        revoked = 0
        first_error: Optional[ProviderError] = None
        for token in tokens:
            if not token or not token.strip():
                continue
            try:
                self._send(
                    "token_revoke",
                    lambda: http_post(
                        self.cfg.revoke_endpoint,
                        data={"token": token.strip()},
                        headers=_FORM_HEADERS,
                        timeout=self.cfg.timeout_seconds,
                    ),
                    expect_json=False,
                )
            except ProviderError as exc:
                first_error = first_error or exc
                continue
            revoked += 1
        if revoked == 0 and first_error is not None:
            raise first_error
        return revoked

    def _user_info(self, access_token: str) -> ProviderUserInfo:
        body = self._send(
            "user_info",
            lambda: http_get(
                self.cfg.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.cfg.timeout_seconds,
            ),
        )
        return ProviderUserInfo(
            email=body.get("email") or None,
            name=body.get("name") or "",
            avatar_url=body.get("picture") or None,
        )

    def _send(self, operation: str, call: Callable[[], object], *, expect_json: bool = True) -> Dict[str, object]:
        try:
            resp = call()
        except http.Timeout as exc:
            logger.warning("Provider %s timed out", operation)
            raise ProviderError(f"{operation}_timeout", retryable=True) from exc
        except http.RequestException as exc:
            logger.warning("Provider %s failed: %s", operation, exc.__class__.__name__)
            raise ProviderError(f"{operation}_unreachable", retryable=True) from exc

        status = getattr(resp, "status_code", 0)
        if status != 200:
            logger.warning("Provider %s returned status %s", operation, status)
            raise ProviderError.from_status(status, f"{operation}_failed")
        if not expect_json:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderError(f"{operation}_invalid_json", retryable=False, status_code=status) from exc
        if not isinstance(body, dict):
            raise ProviderError(f"{operation}_invalid_json", retryable=False, status_code=status)
        return body


def _split_scopes(raw: object) -> tuple:
    if isinstance(raw, str):
        return tuple(s for s in raw.split() if s)
    if isinstance(raw, (list, tuple)):
        return tuple(str(s) for s in raw if s)
    return ()


def _as_int(raw: object) -> Optional[int]:
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


__all__ = [
    "ProviderClient",
    "ProviderConfig",
    "GoogleProviderClient",
    "http_post",
    "http_get",
    "generate_code_verifier",
    "code_challenge_s256",
    "callback_uri",
]
