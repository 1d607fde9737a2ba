"""
OAuth FastAPI routes (router-only module).

Why:
    Keep the HTTP boundary thin: parse the request, call the orchestrator, map
    `AuthFlowError` codes to status codes. No flow logic lives here.

Notes:
    - The orchestrator is built once by `main.create_app()` and read from
      `request.app.state.orchestrator`; routes keep no module-level state.
    - Every response carries `Cache-Control: private, no-store` because bodies
      contain session tokens or state tokens.
    - Handlers are plain `def`: the orchestrator makes blocking provider
      calls, so FastAPI runs each request in its threadpool and flows for
      different users proceed in parallel.
    - The second-factor completion step is an in-process call and is not
      routed here.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
import logging

from identity_access.errors import AuthFlowError, ErrorCode
from identity_access.orchestrator import AuthOrchestrator


auth_router = APIRouter(tags=["OAuth"])  # explicit paths, no prefix
logger = logging.getLogger("idgate.web.auth")

_STATUS_BY_CODE = {
    ErrorCode.INVALID_STATE: 400,
    ErrorCode.MISSING_DATA: 400,
    ErrorCode.INVALID_PROVIDER: 400,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.INVALID_SCOPE: 400,
    ErrorCode.TOKEN_INVALID: 401,
    ErrorCode.AUTH_FAILED: 403,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.USER_EXISTS: 409,
    ErrorCode.PROVIDER_UNAVAILABLE: 503,
}


def _private_no_store() -> dict:
    return {"Cache-Control": "private, no-store"}


def _orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.orchestrator


def _error_response(exc: AuthFlowError) -> JSONResponse:
    status = _STATUS_BY_CODE.get(exc.code, 400)
    if status >= 500:
        logger.warning("OAuth request failed: %s retryable=%s", exc.code.value, exc.retryable)
    else:
        logger.info("OAuth request rejected: %s", exc.code.value)
    return JSONResponse(exc.to_dict(), status_code=status, headers=_private_no_store())


# --- Request models -------------------------------------------------------------

class RefreshPayload(BaseModel):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1)
    account_id: str | None = Field(default=None, alias="accountId")

    @field_validator("account_id")
    @classmethod
    def _strip_empty(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v if v else None
        return v


class RevokePayload(BaseModel):
    account_id: str = Field(..., alias="accountId", min_length=1)
    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")


# --- Routes ---------------------------------------------------------------------

@auth_router.get("/oauth/{flow}/callback/{provider}")
def oauth_callback(
    request: Request,
    flow: str,
    provider: str,
    code: str | None = None,
    state: str | None = None,
):
    """Provider redirect target: consume the state and finish the flow.

    Returns `{session, ...}` or `{pendingTwoFactor}`; failures return
    `{error, message}`.
    """
    try:
        result = _orchestrator(request).handle_callback(flow, provider, code, state)
    except AuthFlowError as exc:
        return _error_response(exc)
    return JSONResponse(result.to_dict(), headers=_private_no_store())


@auth_router.get("/oauth/{flow}/{provider}")
def oauth_initiate(
    request: Request,
    flow: str,
    provider: str,
    callbackTarget: str | None = None,
    callbackUrl: str | None = None,
    accountId: str | None = None,
    scopeNames: str | None = None,
):
    """Start a flow and return `{authorizationUrl, stateToken}`.

    `callbackUrl` is accepted as an older name for `callbackTarget`.
    `scopeNames` (permission flows) accepts a JSON array or a comma-separated
    string.
    """
    target = callbackTarget if callbackTarget is not None else callbackUrl
    try:
        result = _orchestrator(request).initiate(
            flow,
            provider,
            target,
            account_id=accountId,
            scope_names=scopeNames,
        )
    except AuthFlowError as exc:
        return _error_response(exc)
    return JSONResponse(result.to_dict(), headers=_private_no_store())


@auth_router.post("/oauth/refresh")
def oauth_refresh(request: Request, payload: RefreshPayload):
    try:
        result = _orchestrator(request).refresh(payload.refresh_token, expected_account_id=payload.account_id)
    except AuthFlowError as exc:
        return _error_response(exc)
    return JSONResponse(result.to_dict(), headers=_private_no_store())


@auth_router.post("/oauth/revoke")
def oauth_revoke(request: Request, payload: RevokePayload):
    """Revoke a session pair; provider failures are reported, not fatal."""
    try:
        result = _orchestrator(request).revoke(
            payload.account_id,
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
        )
    except AuthFlowError as exc:
        return _error_response(exc)
    return JSONResponse(result.to_dict(), headers=_private_no_store())
