"""
Provider consent page for the simulator backend (development only).

Mounted by `main.create_app()` only when `AUTH_PROVIDER_BACKEND=mock`. The
authorization URL handed out by the simulator points here; this route plays
the user's consent and redirects the browser to the flow's callback with
`code` and `state`, like a real provider would.

The redirect target is the one recorded at initiate time, never a query
parameter, so the route cannot be used as an open redirect.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from identity_access.errors import AuthFlowError, ErrorCode
from identity_access.provider_mock import MockProviderClient


mock_provider_router = APIRouter(tags=["OAuth simulator"])
logger = logging.getLogger("idgate.web.mock_provider")


def _reject(code: ErrorCode, message: str) -> JSONResponse:
    return JSONResponse(
        AuthFlowError(code, message).to_dict(),
        status_code=400,
        headers={"Cache-Control": "private, no-store"},
    )


@mock_provider_router.get("/mock/oauth/{provider}/authorize")
def mock_authorize(
    request: Request,
    provider: str,
    state: str | None = None,
    login_hint: str | None = None,
):
    """Consent as `login_hint` (an email) and redirect to the flow callback.

    Unknown emails are registered with the simulator on first use.
    """
    client: MockProviderClient = request.app.state.mock_provider
    if provider != client.provider.value:
        return _reject(ErrorCode.INVALID_PROVIDER, "Unsupported provider")
    if not state or not login_hint or "@" not in login_hint:
        return _reject(ErrorCode.MISSING_DATA, "state and login_hint are required")
    user = client.ensure_user(login_hint)
    try:
        location = client.consent_redirect(state, user.id)
    except KeyError:
        return _reject(ErrorCode.INVALID_STATE, "Invalid or expired state parameter")
    logger.info("Simulated provider consent provider=%s user=%s", provider, user.id)
    return RedirectResponse(location, status_code=302, headers={"Cache-Control": "private, no-store"})
