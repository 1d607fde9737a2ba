"""
Provider simulator tests: the double must behave like a strict provider so
orchestrator tests exercise real failure paths.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from identity_access.domain import ProviderTokenPair, ProviderUserInfo
from identity_access.errors import ProviderError
from identity_access.oidc import code_challenge_s256
from utils.mock_tokens import mock_token_owner

REDIRECT = "https://idgate.test/oauth/signin/callback/google"


def _authorize(provider, user_id="alice", verifier="v" * 43, scopes=("openid",)):
    url = provider.build_authorization_url(
        state="state-1",
        scopes=list(scopes),
        redirect_uri=REDIRECT,
        code_challenge=code_challenge_s256(verifier),
    )
    assert parse_qs(urlparse(url).query)["state"] == ["state-1"]
    return provider.authorize("state-1", user_id)


def test_exchange_issues_deterministic_token_format(provider):
    code = _authorize(provider)
    pair = provider.exchange_code(code, REDIRECT, code_verifier="v" * 43)
    assert pair.access_token.startswith("mock_google_access_alice_")
    assert pair.refresh_token.startswith("mock_google_refresh_alice_")
    assert mock_token_owner(pair.access_token) == "alice"
    assert pair.user_info.email == "alice@example.com"
    assert pair.scopes == ("openid",)


def test_code_is_single_use(provider):
    code = _authorize(provider)
    provider.exchange_code(code, REDIRECT, code_verifier="v" * 43)
    with pytest.raises(ProviderError) as excinfo:
        provider.exchange_code(code, REDIRECT, code_verifier="v" * 43)
    assert excinfo.value.retryable is False


def test_wrong_verifier_rejected(provider):
    code = _authorize(provider)
    with pytest.raises(ProviderError):
        provider.exchange_code(code, REDIRECT, code_verifier="w" * 43)


def test_redirect_uri_must_match(provider):
    code = _authorize(provider)
    with pytest.raises(ProviderError):
        provider.exchange_code(code, "https://elsewhere/cb", code_verifier="v" * 43)


def test_omit_refresh_token(provider):
    provider.omit_refresh_token = True
    code = _authorize(provider)
    assert provider.exchange_code(code, REDIRECT, code_verifier="v" * 43).refresh_token is None


def test_fail_next_raises_once(provider):
    provider.fail_next(ProviderError("down", retryable=True, status_code=503))
    with pytest.raises(ProviderError) as excinfo:
        provider.get_token_info("anything")
    assert excinfo.value.retryable is True
    # Next call sees the real outcome (unknown token, terminal)
    with pytest.raises(ProviderError) as excinfo:
        provider.get_token_info("anything")
    assert excinfo.value.retryable is False


def test_reported_scopes_override(provider):
    code = _authorize(provider, scopes=("a", "b", "c"))
    pair = provider.exchange_code(code, REDIRECT, code_verifier="v" * 43)
    assert provider.get_token_info(pair.access_token).scopes == ("a", "b", "c")
    provider.reported_scopes = ("a", "b")
    assert provider.get_token_info(pair.access_token).scopes == ("a", "b")


def test_refresh_keeps_provider_refresh_token(provider):
    code = _authorize(provider)
    pair = provider.exchange_code(code, REDIRECT, code_verifier="v" * 43)
    refreshed = provider.refresh_access_token(pair.refresh_token)
    assert refreshed.access_token != pair.access_token
    assert refreshed.refresh_token is None
    assert mock_token_owner(refreshed.access_token) == "alice"


def test_revoke_blocks_further_use(provider):
    code = _authorize(provider)
    pair = provider.exchange_code(code, REDIRECT, code_verifier="v" * 43)
    assert provider.revoke_tokens([pair.access_token, pair.refresh_token]) == 2
    assert provider.is_revoked(pair.refresh_token)
    with pytest.raises(ProviderError):
        provider.refresh_access_token(pair.refresh_token)
    with pytest.raises(ProviderError):
        provider.revoke_tokens([pair.access_token])


def test_scripted_exchange_returns_fixed_pair(provider):
    scripted = ProviderTokenPair(
        access_token="AT",
        refresh_token="RT",
        expires_in_seconds=3600,
        user_info=ProviderUserInfo(email="x@y.com"),
    )
    provider.script_exchange("code123", scripted)
    assert provider.exchange_code("code123", "https://any/cb") == scripted
    assert provider.get_token_info("AT").email == "x@y.com"


def test_user_ids_must_not_contain_underscores(provider):
    with pytest.raises(ValueError):
        provider.add_user("bad_id", "bad@example.com")


def test_consent_redirect_points_back_to_callback(provider):
    provider.build_authorization_url(
        state="state-2",
        scopes=["openid"],
        redirect_uri=REDIRECT,
        code_challenge=code_challenge_s256("v" * 43),
    )
    location = provider.consent_redirect("state-2", "alice")
    parsed = urlparse(location)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == REDIRECT
    qs = parse_qs(parsed.query)
    assert qs["state"] == ["state-2"]
    pair = provider.exchange_code(qs["code"][0], REDIRECT, code_verifier="v" * 43)
    assert mock_token_owner(pair.access_token) == "alice"


def test_ensure_user_reuses_existing_email(provider):
    assert provider.ensure_user("Alice@Example.com").id == "alice"
    created = provider.ensure_user("carol@example.com")
    assert "_" not in created.id
    assert provider.ensure_user("carol@example.com") is created


def test_abandoned_authorizations_expire(provider, clock):
    for i in range(3):
        provider.build_authorization_url(
            state=f"abandoned-{i}", scopes=["openid"], redirect_uri=REDIRECT, code_challenge="c"
        )
    assert provider.pending_count() == 3
    clock.advance(601)
    provider.build_authorization_url(state="fresh", scopes=["openid"], redirect_uri=REDIRECT, code_challenge="c")
    assert provider.pending_count() == 1
    with pytest.raises(KeyError):
        provider.authorize("abandoned-0", "alice")


def test_pending_authorizations_are_capped(provider):
    provider.max_pending = 2
    for i in range(3):
        provider.build_authorization_url(
            state=f"s{i}", scopes=["openid"], redirect_uri=REDIRECT, code_challenge="c"
        )
    assert provider.pending_count() == 2
    with pytest.raises(KeyError):
        provider.authorize("s0", "alice")
    assert provider.authorize("s2", "alice").startswith("mock_code_")
