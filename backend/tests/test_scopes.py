"""
Scope parsing and ledger tests.
"""

from __future__ import annotations

import pytest

from identity_access.errors import AuthFlowError, ErrorCode
from identity_access.scopes import (
    SCOPE_BASE_URL,
    ScopeLedger,
    build_scope_url,
    build_scope_urls,
    is_valid_scope_name,
    parse_scope_names,
)

EMAIL = "https://www.googleapis.com/auth/userinfo.email"
PROFILE = "https://www.googleapis.com/auth/userinfo.profile"


def test_parse_json_array():
    assert parse_scope_names('["gmail.readonly", "calendar.events"]') == ["gmail.readonly", "calendar.events"]


def test_parse_comma_separated_trims_and_dedupes():
    assert parse_scope_names(" gmail.readonly , drive.file,gmail.readonly") == ["gmail.readonly", "drive.file"]


def test_parse_accepts_list_and_full_urls():
    assert parse_scope_names(["https://www.googleapis.com/auth/drive"]) == ["https://www.googleapis.com/auth/drive"]


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "",
        "[]",
        "[not json",
        '{"a": 1}',
        "gmail readonly",
        "gmail.readonly,,drive",
        '["ok", 42]',
        42,
    ],
)
def test_parse_rejects_invalid_input(raw):
    with pytest.raises(AuthFlowError) as excinfo:
        parse_scope_names(raw)  # type: ignore[arg-type]
    assert excinfo.value.code is ErrorCode.INVALID_SCOPE


def test_is_valid_scope_name():
    assert is_valid_scope_name("gmail.readonly")
    assert is_valid_scope_name("https://mail.google.com/")
    assert not is_valid_scope_name("https://")
    assert not is_valid_scope_name("a b")
    assert not is_valid_scope_name(None)


def test_build_scope_url_special_and_prefixed():
    assert build_scope_url("openid") == "openid"
    assert build_scope_url("email") == EMAIL
    assert build_scope_url("profile") == PROFILE
    assert build_scope_url("gmail.readonly") == f"{SCOPE_BASE_URL}gmail.readonly"
    assert build_scope_url("https://mail.google.com/") == "https://mail.google.com/"


def test_build_scope_urls_dedupes_preserving_order():
    assert build_scope_urls(["email", EMAIL, "drive"]) == [EMAIL, f"{SCOPE_BASE_URL}drive"]


def test_ledger_merges_grants_as_union():
    ledger = ScopeLedger()
    ledger.record_granted_scopes("acc", ["a", "b"])
    merged = ledger.record_granted_scopes("acc", ["b", "c"])
    assert merged == ("a", "b", "c")
    assert ledger.get_granted_scopes("acc") == ("a", "b", "c")
    assert ledger.get_granted_scopes("other") == ()


def test_compute_missing_detects_silent_revocation():
    ledger = ScopeLedger()
    ledger.record_granted_scopes("acc", ["a", "b", "c"])
    assert ledger.compute_missing("acc", ["a", "b"]) == ("c",)
    assert ledger.compute_missing("acc", ["a", "b", "c", "d"]) == ()


def test_compute_missing_ignores_identity_scopes():
    ledger = ScopeLedger()
    ledger.record_granted_scopes("acc", ["openid", EMAIL, PROFILE, "drive"])
    assert ledger.compute_missing("acc", ["drive"]) == ()


def test_compute_missing_for_unknown_account_is_empty():
    assert ScopeLedger().compute_missing("nobody", []) == ()
