from __future__ import annotations

from cero.services.auth.csrf import issue_csrf_token, verify_csrf_token


def test_token_is_bound_to_session() -> None:
    token = issue_csrf_token("a" * 64)
    assert verify_csrf_token("a" * 64, token)
    assert not verify_csrf_token("b" * 64, token)


def test_missing_values_fail_verification() -> None:
    token = issue_csrf_token("a" * 64)
    assert not verify_csrf_token(None, token)
    assert not verify_csrf_token("a" * 64, None)
    assert not verify_csrf_token("a" * 64, "")


def test_non_ascii_token_is_rejected_not_raised() -> None:
    assert not verify_csrf_token("a" * 64, "é")
    assert not verify_csrf_token("a" * 64, issue_csrf_token("a" * 64)[:-1] + "é")
