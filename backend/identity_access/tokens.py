"""
First-party signed tokens that wrap provider tokens.

Why: Callers get a self-contained session that can be verified without a
database lookup, while the provider's own tokens travel inside it and are only
unwrapped server-side.

Security:
- Access and refresh tokens use disjoint payload shapes with an explicit
  `typ` discriminator; a structurally valid token of the wrong kind is
  rejected.
- Signature failure, expiry, kind mismatch and local revocation all collapse
  into one opaque outcome (`None`) for callers. The internal reason is only
  logged at debug level.
- Only HS256 is accepted regardless of the token header.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional
import logging
import secrets
import threading
import time

from jose import jwt
from jose.exceptions import JOSEError


logger = logging.getLogger("idgate.identity_access.tokens")

ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
DEFAULT_ACCESS_TTL_SECONDS = 3600
DEFAULT_REFRESH_TTL_SECONDS = 30 * 24 * 3600
MAX_CLOCK_SKEW_SECONDS = 5  # Allow minimal skew between servers


def _now() -> int:
    return int(time.time())


class TokenVerificationError(Exception):
    """Internal verification failure; never raised out of TokenService."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class AccessTokenClaims:
    account_id: str
    provider_access_token: str
    issued_at: int
    expires_at: int
    token_id: str


@dataclass(frozen=True)
class RefreshTokenClaims:
    account_id: str
    provider_refresh_token: str
    issued_at: int
    expires_at: int
    token_id: str


class RevocationList:
    """Token ids revoked locally, remembered until the token would expire anyway."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, int] = {}

    def add(self, token_id: str, expires_at: int) -> None:
        with self._lock:
            self._purge(_now())
            self._entries[token_id] = expires_at

    def __contains__(self, token_id: object) -> bool:
        with self._lock:
            return token_id in self._entries

    def _purge(self, now: int) -> None:
        stale = [jti for jti, exp in self._entries.items() if exp + MAX_CLOCK_SKEW_SECONDS < now]
        for jti in stale:
            del self._entries[jti]


class TokenService:
    """Mints and verifies first-party access and refresh tokens.

    Parameters
    ----------
    secret:
        HS256 signing secret.
    access_ttl_seconds:
        Default lifetime when the caller does not pass a provider-derived TTL.
    refresh_ttl_seconds:
        Lifetime of refresh tokens.
    issuer:
        Value of the `iss` claim; verification requires it.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl_seconds: int = DEFAULT_ACCESS_TTL_SECONDS,
        refresh_ttl_seconds: int = DEFAULT_REFRESH_TTL_SECONDS,
        issuer: str = "idgate",
        revocations: Optional[RevocationList] = None,
    ):
        if not secret:
            raise ValueError("TokenService requires a signing secret")
        self._secret = secret
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.issuer = issuer
        self.revocations = revocations or RevocationList()

    # -- issuing -----------------------------------------------------------

    def issue_access_token(self, account_id: str, provider_access_token: str, ttl_seconds: Optional[int] = None) -> str:
        if not account_id or not provider_access_token:
            raise ValueError("account_id and provider_access_token are required")
        ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else self.access_ttl_seconds
        now = _now()
        claims = {
            "iss": self.issuer,
            "sub": account_id,
            "typ": ACCESS_TOKEN_TYPE,
            "pat": provider_access_token,
            "iat": now,
            "exp": now + ttl,
            "jti": secrets.token_urlsafe(16),
        }
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def issue_refresh_token(self, account_id: str, provider_refresh_token: str) -> str:
        if not account_id or not provider_refresh_token:
            raise ValueError("account_id and provider_refresh_token are required")
        now = _now()
        claims = {
            "iss": self.issuer,
            "sub": account_id,
            "typ": REFRESH_TOKEN_TYPE,
            "prt": provider_refresh_token,
            "iat": now,
            "exp": now + self.refresh_ttl_seconds,
            "jti": secrets.token_urlsafe(16),
        }
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    # -- verification ------------------------------------------------------

    def verify_access_token(self, token: str) -> Optional[AccessTokenClaims]:
        """Return the access claims, or None for any invalid token."""
        try:
            claims = self._verify(token, ACCESS_TOKEN_TYPE, wrapped="pat", foreign="prt")
        except TokenVerificationError as exc:
            logger.debug("Access token rejected: %s", exc.code)
            return None
        return AccessTokenClaims(
            account_id=claims["sub"],
            provider_access_token=claims["pat"],
            issued_at=int(claims.get("iat") or 0),
            expires_at=int(claims["exp"]),
            token_id=claims["jti"],
        )

    def verify_refresh_token(self, token: str) -> Optional[RefreshTokenClaims]:
        """Return the refresh claims, or None for any invalid token."""
        try:
            claims = self._verify(token, REFRESH_TOKEN_TYPE, wrapped="prt", foreign="pat")
        except TokenVerificationError as exc:
            logger.debug("Refresh token rejected: %s", exc.code)
            return None
        return RefreshTokenClaims(
            account_id=claims["sub"],
            provider_refresh_token=claims["prt"],
            issued_at=int(claims.get("iat") or 0),
            expires_at=int(claims["exp"]),
            token_id=claims["jti"],
        )

    def revoke(self, token: str) -> bool:
        """Revoke a currently valid token of either kind. Returns False otherwise."""
        for kind, wrapped, foreign in (
            (ACCESS_TOKEN_TYPE, "pat", "prt"),
            (REFRESH_TOKEN_TYPE, "prt", "pat"),
        ):
            try:
                claims = self._verify(token, kind, wrapped=wrapped, foreign=foreign)
            except TokenVerificationError:
                continue
            self.revocations.add(claims["jti"], int(claims["exp"]))
            return True
        return False

    def _verify(self, token: str, kind: str, *, wrapped: str, foreign: str) -> Dict[str, object]:
        claims = self._decode(token)
        _validate_temporal_claims(claims)
        if claims.get("typ") != kind:
            raise TokenVerificationError("wrong_token_type")
        if foreign in claims:
            raise TokenVerificationError("wrong_token_shape")
        if not isinstance(claims.get(wrapped), str) or not claims.get(wrapped):
            raise TokenVerificationError("missing_wrapped_token")
        if not isinstance(claims.get("sub"), str) or not claims.get("sub"):
            raise TokenVerificationError("missing_subject")
        jti = claims.get("jti")
        if not isinstance(jti, str) or not jti:
            raise TokenVerificationError("missing_jti")
        if jti in self.revocations:
            raise TokenVerificationError("revoked")
        return claims

    def _decode(self, token: str) -> Dict[str, object]:
        if not isinstance(token, str) or not token:
            raise TokenVerificationError("malformed")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={
                    "verify_signature": True,
                    "verify_aud": False,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except JOSEError as exc:
            raise TokenVerificationError("invalid_signature") from exc
        if not isinstance(claims, dict):
            raise TokenVerificationError("malformed")
        return claims


def _validate_temporal_claims(claims: Dict[str, object]) -> None:
    now = _now()
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise TokenVerificationError("missing_exp")
    if exp + MAX_CLOCK_SKEW_SECONDS < now:
        raise TokenVerificationError("expired")

    iat = claims.get("iat")
    if isinstance(iat, (int, float)) and iat - MAX_CLOCK_SKEW_SECONDS > now:
        raise TokenVerificationError("issued_in_future")


__all__ = [
    "TokenService",
    "AccessTokenClaims",
    "RefreshTokenClaims",
    "RevocationList",
    "ACCESS_TOKEN_TYPE",
    "REFRESH_TOKEN_TYPE",
]
