"""
Provider scope handling: parsing requested scope names, building provider
scope URLs, and the per-account ledger of granted scopes.

Why: The provider is the authority on which scopes exist, so names are only
checked for a sane format here. The ledger remembers what an account was
granted so that a fresh token carrying fewer scopes (silent revocation on the
provider side) can be detected and reported as "needs additional scopes".
"""
from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Sequence, Tuple, Union
from urllib.parse import urlparse
import json
import re
import threading

from .errors import AuthFlowError, ErrorCode

SCOPE_BASE_URL = "https://www.googleapis.com/auth/"

SPECIAL_SCOPES: Dict[str, str] = {
    "openid": "openid",
    "email": "https://www.googleapis.com/auth/userinfo.email",
    "profile": "https://www.googleapis.com/auth/userinfo.profile",
}

# Basic identity scopes every sign-in carries; never reported as missing.
IDENTITY_SCOPES: FrozenSet[str] = frozenset(SPECIAL_SCOPES.values())

AUTHENTICATION_SCOPE_NAMES: Tuple[str, ...] = ("openid", "email", "profile")

_SCOPE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def is_valid_scope_name(name: object) -> bool:
    if not isinstance(name, str):
        return False
    trimmed = name.strip()
    if not trimmed:
        return False
    if trimmed.startswith(("https://", "http://")):
        parsed = urlparse(trimmed)
        return bool(parsed.scheme and parsed.netloc)
    return bool(_SCOPE_NAME_PATTERN.match(trimmed))


def parse_scope_names(raw: Union[str, Sequence[str], None]) -> List[str]:
    """Parse scope names given as a JSON array or a comma-separated string.

    Raises `AuthFlowError(INVALID_SCOPE)` when the input is neither, when the
    result is empty, or when any name is malformed. Never returns an empty
    list silently.
    """
    if raw is None:
        raise AuthFlowError(ErrorCode.INVALID_SCOPE, "At least one scope name is required")

    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError as exc:
                raise AuthFlowError(ErrorCode.INVALID_SCOPE, "Scope names are not a valid JSON array") from exc
            if not isinstance(parsed, list):
                raise AuthFlowError(ErrorCode.INVALID_SCOPE, "Scope names must be a list")
            names = parsed
        else:
            names = [part for part in text.split(",")]
    elif isinstance(raw, (list, tuple)):
        names = list(raw)
    else:
        raise AuthFlowError(ErrorCode.INVALID_SCOPE, "Scope names must be a list or a comma-separated string")

    if not names:
        raise AuthFlowError(ErrorCode.INVALID_SCOPE, "At least one scope name is required")

    result: List[str] = []
    for index, name in enumerate(names):
        if not is_valid_scope_name(name):
            raise AuthFlowError(ErrorCode.INVALID_SCOPE, f"Invalid scope name at index {index}")
        trimmed = name.strip()
        if trimmed not in result:
            result.append(trimmed)
    return result


def build_scope_url(name: str) -> str:
    if name in SPECIAL_SCOPES:
        return SPECIAL_SCOPES[name]
    if name.startswith(("https://", "http://")):
        return name
    return f"{SCOPE_BASE_URL}{name}"


def build_scope_urls(names: Iterable[str]) -> List[str]:
    urls: List[str] = []
    for name in names:
        url = build_scope_url(name)
        if url not in urls:
            urls.append(url)
    return urls


class ScopeLedger:
    """Granted provider scopes per account.

    Writes merge into the stored set under a per-ledger lock; concurrent
    flows for the same account may land in either order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._granted: Dict[str, FrozenSet[str]] = {}

    def record_granted_scopes(self, account_id: str, scopes: Iterable[str]) -> Tuple[str, ...]:
        incoming = frozenset(s for s in scopes if s)
        with self._lock:
            merged = self._granted.get(account_id, frozenset()) | incoming
            if merged:
                self._granted[account_id] = merged
        return tuple(sorted(merged))

    def get_granted_scopes(self, account_id: str) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._granted.get(account_id, frozenset())))

    def compute_missing(self, account_id: str, current_provider_scopes: Iterable[str]) -> Tuple[str, ...]:
        """Stored scopes the current token no longer carries (identity scopes ignored)."""
        current = set(current_provider_scopes)
        stored = self.get_granted_scopes(account_id)
        return tuple(s for s in stored if s not in IDENTITY_SCOPES and s not in current)


__all__ = [
    "SCOPE_BASE_URL",
    "SPECIAL_SCOPES",
    "IDENTITY_SCOPES",
    "AUTHENTICATION_SCOPE_NAMES",
    "is_valid_scope_name",
    "parse_scope_names",
    "build_scope_url",
    "build_scope_urls",
    "ScopeLedger",
]
