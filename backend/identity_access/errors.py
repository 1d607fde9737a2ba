"""
Error taxonomy for the identity_access bounded context.

Why: The web adapter must map every failure to a stable client-facing code
that does not depend on the provider's own error vocabulary. Keeping the codes
and exception types here lets the orchestrator raise them without importing
any web framework.

Security: Messages are short and generic. They never include tokens, codes,
or the reason a first-party token failed verification.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class ErrorCode(str, Enum):
    INVALID_STATE = "INVALID_STATE"
    TOKEN_INVALID = "TOKEN_INVALID"
    USER_EXISTS = "USER_EXISTS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    AUTH_FAILED = "AUTH_FAILED"
    MISSING_DATA = "MISSING_DATA"
    INVALID_PROVIDER = "INVALID_PROVIDER"
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_SCOPE = "INVALID_SCOPE"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"


class AuthFlowError(Exception):
    """Terminal or retryable failure of an OAuth flow step."""

    retryable = False

    def __init__(self, code: ErrorCode, message: str = ""):
        super().__init__(message or code.value)
        self.code = code
        self.message = message or code.value

    def to_dict(self) -> Dict[str, object]:
        return {"error": self.code.value, "message": self.message}


class ProviderError(AuthFlowError):
    """Raised by provider adapters.

    Timeouts, connection failures and 5xx responses are retryable by the
    caller (the orchestrator never retries). 4xx responses and malformed
    payloads are terminal.
    """

    def __init__(self, message: str, *, retryable: bool, status_code: Optional[int] = None):
        code = ErrorCode.PROVIDER_UNAVAILABLE if retryable else ErrorCode.TOKEN_INVALID
        super().__init__(code, message)
        self.retryable = retryable
        self.status_code = status_code

    @classmethod
    def from_status(cls, status_code: int, message: str) -> "ProviderError":
        return cls(message, retryable=status_code >= 500, status_code=status_code)

    def to_dict(self) -> Dict[str, object]:
        body = super().to_dict()
        body["retryable"] = self.retryable
        return body


__all__ = ["ErrorCode", "AuthFlowError", "ProviderError"]
