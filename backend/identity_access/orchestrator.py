"""
OAuth flow orchestration: initiate, callback, two-factor completion, refresh
and revoke.

Why: This is the only component that knows the state store, the provider
client, the token service, the scope ledger and the account repository. The
web adapter talks to it and nothing else. All collaborators are passed in
explicitly; nothing here keeps module-level state.

Flow per callback:
    take flow state -> exchange code -> resolve account ->
    (two-factor handoff | signed session)

Security:
- State validity is checked before anything else, so a forged or expired
  state never reveals whether an email has an account.
- Permission grants verify that the provider token belongs to the account
  that started the flow; a mismatch is logged and terminal, and no scopes
  are recorded.
- Provider errors propagate as `ProviderError`; local token failures surface
  as `TOKEN_INVALID` without a reason.
"""
from __future__ import annotations

from typing import Mapping, Optional, Sequence, Union
from urllib.parse import urlparse
import logging

from .accounts import AccountRepository
from .domain import (
    Account,
    AccountType,
    CallbackResult,
    FlowKind,
    FlowState,
    InitiateResult,
    OAuthProvider,
    ProviderTokenPair,
    RefreshResult,
    RevocationResult,
    SignedSession,
    TokenInfo,
    TwoFactorHandoff,
)
from .errors import AuthFlowError, ErrorCode, ProviderError
from .oidc import ProviderClient, callback_uri, code_challenge_s256, generate_code_verifier
from .scopes import AUTHENTICATION_SCOPE_NAMES, ScopeLedger, build_scope_urls, parse_scope_names
from .stores import RecordKind, StateStore
from .tokens import TokenService


logger = logging.getLogger("idgate.identity_access.orchestrator")


class AuthOrchestrator:
    """Drives sign-up, sign-in, permission and reauthorization flows.

    Parameters
    ----------
    providers:
        Provider clients keyed by provider. The first entry serves accounts
        that have no provider recorded.
    callback_base_url:
        Public base URL; provider redirect URIs are derived from it per flow
        kind (see `oidc.callback_uri`).
    rotate_refresh_tokens:
        Issue a new first-party refresh token on every refresh and revoke the
        presented one.
    """

    def __init__(
        self,
        *,
        providers: Mapping[OAuthProvider, ProviderClient],
        states: StateStore,
        tokens: TokenService,
        ledger: ScopeLedger,
        accounts: AccountRepository,
        callback_base_url: str,
        rotate_refresh_tokens: bool = False,
    ):
        if not providers:
            raise ValueError("at least one provider client is required")
        self._providers = dict(providers)
        self._default_provider = next(iter(self._providers))
        self.states = states
        self.tokens = tokens
        self.ledger = ledger
        self.accounts = accounts
        self.callback_base_url = callback_base_url
        self.rotate_refresh_tokens = rotate_refresh_tokens

    def redirect_uri(self, flow_kind: FlowKind, provider: OAuthProvider) -> str:
        return callback_uri(self.callback_base_url, flow_kind, provider)

    # -- initiate ----------------------------------------------------------

    def initiate(
        self,
        flow_kind: Union[FlowKind, str],
        provider: Union[OAuthProvider, str],
        callback_target: str,
        *,
        account_id: Optional[str] = None,
        scope_names: Union[str, Sequence[str], None] = None,
    ) -> InitiateResult:
        """Create a flow state and return the provider authorization URL.

        REAUTHORIZE for an account without recorded scopes returns an empty
        result and creates no state.
        """
        kind = _coerce_flow_kind(flow_kind)
        provider_id = _coerce_provider(provider)
        client = self._client(provider_id)
        target = _validate_callback_target(callback_target)

        if kind.is_authentication:
            scopes = build_scope_urls(AUTHENTICATION_SCOPE_NAMES)
            account_id = None
        else:
            if not account_id:
                raise AuthFlowError(ErrorCode.MISSING_DATA, "accountId is required")
            if self.accounts.find_account_by_id(account_id) is None:
                raise AuthFlowError(ErrorCode.USER_NOT_FOUND, "Account not found")
            if kind is FlowKind.PERMISSION:
                scopes = build_scope_urls(parse_scope_names(scope_names))
            else:
                scopes = list(self.ledger.get_granted_scopes(account_id))
                if not scopes:
                    logger.info("Reauthorization skipped: no recorded scopes account=%s", account_id)
                    return InitiateResult(authorization_url=None, state_token=None, scopes=())

        verifier = generate_code_verifier()
        flow = FlowState(
            provider=provider_id,
            flow_kind=kind,
            callback_target=target,
            account_id=account_id,
            requested_scopes=tuple(scopes),
            code_verifier=verifier,
        )
        state_token = self.states.put(RecordKind.FLOW, flow)
        url = client.build_authorization_url(
            state=state_token,
            scopes=scopes,
            redirect_uri=self.redirect_uri(kind, provider_id),
            code_challenge=code_challenge_s256(verifier),
        )
        return InitiateResult(authorization_url=url, state_token=state_token, scopes=tuple(scopes))

    # -- callback ----------------------------------------------------------

    def handle_callback(
        self,
        flow_kind: Union[FlowKind, str],
        provider: Union[OAuthProvider, str],
        code: Optional[str],
        state_token: Optional[str],
    ) -> CallbackResult:
        kind = _coerce_flow_kind(flow_kind)
        provider_id = _coerce_provider(provider)

        record = self.states.take(RecordKind.FLOW, state_token or "")
        if record is None:
            raise AuthFlowError(ErrorCode.INVALID_STATE, "Invalid or expired state")
        flow: FlowState = record.payload
        if flow.provider is not provider_id or flow.flow_kind is not kind:
            raise AuthFlowError(ErrorCode.INVALID_STATE, "Invalid or expired state")
        if not code:
            raise AuthFlowError(ErrorCode.MISSING_DATA, "Authorization code is required")

        client = self._client(provider_id)
        tokens = client.exchange_code(
            code,
            self.redirect_uri(kind, provider_id),
            code_verifier=flow.code_verifier,
        )
        if not tokens.refresh_token and kind is not FlowKind.REAUTHORIZE:
            raise AuthFlowError(ErrorCode.TOKEN_INVALID, "Provider did not return a refresh token")

        if kind is FlowKind.SIGN_UP:
            return self._sign_up(flow, client, tokens)
        if kind is FlowKind.SIGN_IN:
            return self._sign_in(flow, client, tokens)
        return self._grant_permission(flow, client, tokens)

    def _sign_up(self, flow: FlowState, client: ProviderClient, tokens: ProviderTokenPair) -> CallbackResult:
        email = tokens.user_info.email
        if not email:
            raise AuthFlowError(ErrorCode.MISSING_DATA, "Provider did not return an email")
        if self.accounts.find_account_by_email(email) is not None:
            raise AuthFlowError(ErrorCode.USER_EXISTS, "An account with this email already exists")

        info = client.get_token_info(tokens.access_token)
        try:
            account = self.accounts.create_account(
                email=email,
                name=tokens.user_info.name,
                provider=flow.provider,
                avatar_url=tokens.user_info.avatar_url,
            )
        except ValueError as exc:
            raise AuthFlowError(ErrorCode.USER_EXISTS, "An account with this email already exists") from exc

        self._record_scopes(account.id, info, tokens)
        session = self._issue_session(account.id, tokens, info, primary=True)
        logger.info("OAuth signup completed provider=%s account=%s", flow.provider.value, account.id)
        return CallbackResult(
            flow_kind=FlowKind.SIGN_UP,
            callback_target=flow.callback_target,
            account_id=account.id,
            session=session,
            name=account.name,
        )

    def _sign_in(self, flow: FlowState, client: ProviderClient, tokens: ProviderTokenPair) -> CallbackResult:
        email = tokens.user_info.email
        if not email:
            raise AuthFlowError(ErrorCode.MISSING_DATA, "Provider did not return an email")
        account = self.accounts.find_account_by_email(email)
        if account is None:
            raise AuthFlowError(ErrorCode.USER_NOT_FOUND, "No account for this email")
        if account.account_type is not AccountType.OAUTH or (
            account.provider is not None and account.provider is not flow.provider
        ):
            logger.warning("OAuth signin rejected: account type mismatch account=%s", account.id)
            raise AuthFlowError(ErrorCode.AUTH_FAILED, "Account cannot sign in with this provider")

        if account.two_factor_enabled:
            handoff = TwoFactorHandoff(
                account_id=account.id,
                provider=flow.provider,
                tokens=tokens,
                callback_target=flow.callback_target,
            )
            handoff_token = self.states.put(RecordKind.TWO_FACTOR, handoff)
            logger.info("OAuth signin awaiting second factor account=%s", account.id)
            return CallbackResult(
                flow_kind=FlowKind.SIGN_IN,
                callback_target=flow.callback_target,
                account_id=account.id,
                pending_two_factor=handoff_token,
            )
        return self._finish_sign_in(account, flow.provider, tokens, flow.callback_target, client)

    def _finish_sign_in(
        self,
        account: Account,
        provider: OAuthProvider,
        tokens: ProviderTokenPair,
        callback_target: str,
        client: ProviderClient,
    ) -> CallbackResult:
        info = client.get_token_info(tokens.access_token)
        self._record_scopes(account.id, info, tokens)
        missing = self.ledger.compute_missing(account.id, info.scopes)
        session = self._issue_session(account.id, tokens, info, primary=True)
        logger.info(
            "OAuth signin completed provider=%s account=%s missing_scopes=%d",
            provider.value,
            account.id,
            len(missing),
        )
        return CallbackResult(
            flow_kind=FlowKind.SIGN_IN,
            callback_target=callback_target,
            account_id=account.id,
            session=session,
            name=account.name,
            missing_scopes=missing,
        )

    def _grant_permission(self, flow: FlowState, client: ProviderClient, tokens: ProviderTokenPair) -> CallbackResult:
        account_id = flow.account_id
        if not account_id:
            raise AuthFlowError(ErrorCode.MISSING_DATA, "accountId is required")
        account = self.accounts.find_account_by_id(account_id)
        if account is None:
            raise AuthFlowError(ErrorCode.USER_NOT_FOUND, "Account not found")

        if not client.verify_token_ownership(tokens.access_token, account_id):
            logger.warning(
                "OAuth %s rejected: provider token does not belong to account=%s",
                flow.flow_kind.value,
                account_id,
            )
            raise AuthFlowError(ErrorCode.AUTH_FAILED, "Token does not belong to this account")

        info = client.get_token_info(tokens.access_token)
        self._record_scopes(account_id, info, tokens)
        missing = self.ledger.compute_missing(account_id, info.scopes)
        session = self._issue_session(account_id, tokens, info, primary=False)
        logger.info("OAuth %s completed provider=%s account=%s", flow.flow_kind.value, flow.provider.value, account_id)
        return CallbackResult(
            flow_kind=flow.flow_kind,
            callback_target=flow.callback_target,
            account_id=account_id,
            session=session,
            name=account.name,
            missing_scopes=missing,
        )

    # -- two-factor --------------------------------------------------------

    def complete_two_factor(self, handoff_token: str, second_factor_verified_ok: bool) -> CallbackResult:
        """Finish a sign-in parked behind a second factor.

        The handoff is consumed in every case, so a failed second factor
        requires a fresh sign-in.
        """
        record = self.states.take(RecordKind.TWO_FACTOR, handoff_token)
        if record is None:
            raise AuthFlowError(ErrorCode.INVALID_STATE, "Invalid or expired handoff")
        handoff: TwoFactorHandoff = record.payload
        if not second_factor_verified_ok:
            logger.info("Second factor failed account=%s", handoff.account_id)
            raise AuthFlowError(ErrorCode.AUTH_FAILED, "Second factor verification failed")

        account = self.accounts.find_account_by_id(handoff.account_id)
        if account is None:
            raise AuthFlowError(ErrorCode.USER_NOT_FOUND, "Account not found")
        provider_email = handoff.tokens.user_info.email or ""
        if provider_email.strip().lower() != account.email.strip().lower():
            logger.warning("Second factor completion rejected: email mismatch account=%s", account.id)
            raise AuthFlowError(ErrorCode.AUTH_FAILED, "Account no longer matches provider identity")

        client = self._client(handoff.provider)
        return self._finish_sign_in(account, handoff.provider, handoff.tokens, handoff.callback_target, client)

    # -- refresh / revoke --------------------------------------------------

    def refresh(self, refresh_token: str, expected_account_id: Optional[str] = None) -> RefreshResult:
        claims = self.tokens.verify_refresh_token(refresh_token)
        if claims is None:
            raise AuthFlowError(ErrorCode.TOKEN_INVALID, "Invalid refresh token")
        if expected_account_id and expected_account_id != claims.account_id:
            logger.warning("Refresh rejected: token bound to another account")
            raise AuthFlowError(ErrorCode.TOKEN_INVALID, "Invalid refresh token")

        account = self.accounts.find_account_by_id(claims.account_id)
        if account is None:
            raise AuthFlowError(ErrorCode.USER_NOT_FOUND, "Account not found")
        client = self._client(account.provider or self._default_provider)
        pair = client.refresh_access_token(claims.provider_refresh_token)

        ttl = pair.expires_in_seconds or self.tokens.access_ttl_seconds
        access_token = self.tokens.issue_access_token(claims.account_id, pair.access_token, ttl)

        provider_refresh = pair.refresh_token or claims.provider_refresh_token
        new_refresh_token = refresh_token
        if self.rotate_refresh_tokens or provider_refresh != claims.provider_refresh_token:
            new_refresh_token = self.tokens.issue_refresh_token(claims.account_id, provider_refresh)
            self.tokens.revoke(refresh_token)

        return RefreshResult(
            account_id=claims.account_id,
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_in=ttl,
        )

    def revoke(
        self,
        account_id: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> RevocationResult:
        """Invalidate a session pair locally, then ask the provider to revoke.

        Local invalidation happens first and is never undone by a provider
        failure; the failure is reported in the result.
        """
        provider_tokens = []
        result = RevocationResult(account_id=account_id)

        access_claims = self.tokens.verify_access_token(access_token) if access_token else None
        if access_claims is not None and access_claims.account_id == account_id:
            provider_tokens.append(access_claims.provider_access_token)
            if self.tokens.revoke(access_token):
                result.locally_revoked += 1

        refresh_claims = self.tokens.verify_refresh_token(refresh_token) if refresh_token else None
        if refresh_claims is not None and refresh_claims.account_id == account_id:
            provider_tokens.append(refresh_claims.provider_refresh_token)
            if self.tokens.revoke(refresh_token):
                result.locally_revoked += 1

        if not provider_tokens:
            raise AuthFlowError(ErrorCode.TOKEN_INVALID, "No valid token to revoke")

        account = self.accounts.find_account_by_id(account_id)
        provider_id = account.provider if account is not None and account.provider else self._default_provider
        try:
            result.provider_revoked = self._client(provider_id).revoke_tokens(provider_tokens)
        except ProviderError as exc:
            logger.warning(
                "Provider revocation failed account=%s retryable=%s status=%s",
                account_id,
                exc.retryable,
                exc.status_code,
            )
            result.provider_error = exc
        logger.info("Tokens revoked account=%s local=%d provider=%d", account_id, result.locally_revoked, result.provider_revoked)
        return result

    # -- helpers -----------------------------------------------------------

    def _client(self, provider: OAuthProvider) -> ProviderClient:
        client = self._providers.get(provider)
        if client is None:
            raise AuthFlowError(ErrorCode.INVALID_PROVIDER, "Unsupported provider")
        return client

    def _record_scopes(self, account_id: str, info: TokenInfo, tokens: ProviderTokenPair) -> None:
        granted = info.scopes or tokens.scopes
        merged = self.ledger.record_granted_scopes(account_id, granted)
        self.accounts.update_scopes(account_id, merged)

    def _issue_session(
        self,
        account_id: str,
        tokens: ProviderTokenPair,
        info: TokenInfo,
        *,
        primary: bool,
    ) -> SignedSession:
        ttl = info.expires_in or tokens.expires_in_seconds or self.tokens.access_ttl_seconds
        access_token = self.tokens.issue_access_token(account_id, tokens.access_token, ttl)
        refresh_token = (
            self.tokens.issue_refresh_token(account_id, tokens.refresh_token) if tokens.refresh_token else None
        )
        return SignedSession(
            account_id=account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=ttl,
            primary=primary,
        )


def _coerce_flow_kind(value: Union[FlowKind, str]) -> FlowKind:
    if isinstance(value, str) and value.upper() in FlowKind.__members__:
        return FlowKind[value.upper()]
    try:
        return FlowKind(value)
    except ValueError:
        raise AuthFlowError(ErrorCode.INVALID_REQUEST, "Unsupported flow kind") from None


def _coerce_provider(value: Union[OAuthProvider, str]) -> OAuthProvider:
    try:
        return OAuthProvider(value)
    except ValueError:
        raise AuthFlowError(ErrorCode.INVALID_PROVIDER, "Unsupported provider") from None


def _validate_callback_target(value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise AuthFlowError(ErrorCode.MISSING_DATA, "callbackTarget is required")
    target = value.strip()
    parsed = urlparse(target)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise AuthFlowError(ErrorCode.INVALID_REQUEST, "Malformed callback target")
    return target


__all__ = ["AuthOrchestrator"]
