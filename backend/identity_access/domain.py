"""
Identity domain types shared by stores, tokens, provider adapters and the
orchestrator.

Why:
- Keep one tagged FlowState for every flow kind instead of parallel state
  shapes per flow.
- Use the same terms (flow state, handoff token, scope) in every module.

Result records expose `to_dict()` with the camelCase field names of the HTTP
boundary so the web adapter does not re-map fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from .errors import ProviderError


class FlowKind(str, Enum):
    SIGN_UP = "signup"
    SIGN_IN = "signin"
    PERMISSION = "permission"
    REAUTHORIZE = "reauthorize"

    @property
    def is_authentication(self) -> bool:
        return self in (FlowKind.SIGN_UP, FlowKind.SIGN_IN)


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    FACEBOOK = "facebook"


class AccountType(str, Enum):
    OAUTH = "oauth"
    LOCAL = "local"


@dataclass(frozen=True)
class ProviderUserInfo:
    email: Optional[str]
    name: str = ""
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class ProviderTokenPair:
    """Raw output of an authorization-code exchange."""

    access_token: str
    refresh_token: Optional[str]
    expires_in_seconds: Optional[int]
    user_info: ProviderUserInfo
    scopes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TokenInfo:
    """Provider metadata for an access token."""

    scopes: Tuple[str, ...]
    expires_in: Optional[int] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class FlowState:
    """One in-flight authorization attempt.

    The opaque token, creation and expiry times live on the store record
    that wraps this payload (see `stores.StateRecord`).
    """

    provider: OAuthProvider
    flow_kind: FlowKind
    callback_target: str
    # PERMISSION / REAUTHORIZE only
    account_id: Optional[str] = None
    requested_scopes: Tuple[str, ...] = ()
    # PKCE verifier, never sent to the browser
    code_verifier: Optional[str] = None


@dataclass(frozen=True)
class TwoFactorHandoff:
    """Bridge between a successful provider login and a pending second factor."""

    account_id: str
    provider: OAuthProvider
    tokens: ProviderTokenPair
    callback_target: str


@dataclass
class Account:
    id: str
    email: str
    name: str = ""
    account_type: AccountType = AccountType.OAUTH
    provider: Optional[OAuthProvider] = None
    avatar_url: Optional[str] = None
    two_factor_enabled: bool = False
    scopes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SignedSession:
    account_id: str
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    # Non-primary sessions must not replace the caller's active account.
    primary: bool = True

    def to_dict(self) -> Dict[str, object]:
        return {
            "accountId": self.account_id,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
            "primary": self.primary,
        }


@dataclass(frozen=True)
class InitiateResult:
    authorization_url: Optional[str]
    state_token: Optional[str]
    scopes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "authorizationUrl": self.authorization_url,
            "stateToken": self.state_token,
            "scopes": list(self.scopes),
        }


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of a callback: a session or a pending second factor."""

    flow_kind: FlowKind
    callback_target: str
    account_id: str
    session: Optional[SignedSession] = None
    pending_two_factor: Optional[str] = None
    name: str = ""
    missing_scopes: Tuple[str, ...] = ()

    @property
    def needs_additional_scopes(self) -> bool:
        return bool(self.missing_scopes)

    def to_dict(self) -> Dict[str, object]:
        body: Dict[str, object] = {
            "flowKind": self.flow_kind.value,
            "callbackTarget": self.callback_target,
            "accountId": self.account_id,
        }
        if self.pending_two_factor is not None:
            body["pendingTwoFactor"] = self.pending_two_factor
            return body
        body["session"] = self.session.to_dict() if self.session else None
        body["name"] = self.name
        body["needsAdditionalScopes"] = self.needs_additional_scopes
        body["missingScopes"] = list(self.missing_scopes)
        return body


@dataclass(frozen=True)
class RefreshResult:
    account_id: str
    access_token: str
    refresh_token: str
    expires_in: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "accountId": self.account_id,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


@dataclass
class RevocationResult:
    account_id: str
    locally_revoked: int = 0
    provider_revoked: int = 0
    provider_error: Optional[ProviderError] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, object]:
        return {
            "accountId": self.account_id,
            "locallyRevoked": self.locally_revoked,
            "providerRevoked": self.provider_revoked,
            "providerError": self.provider_error.to_dict() if self.provider_error else None,
        }


__all__ = [
    "FlowKind",
    "OAuthProvider",
    "AccountType",
    "ProviderUserInfo",
    "ProviderTokenPair",
    "TokenInfo",
    "FlowState",
    "TwoFactorHandoff",
    "Account",
    "SignedSession",
    "InitiateResult",
    "CallbackResult",
    "RefreshResult",
    "RevocationResult",
]
