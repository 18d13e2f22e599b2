from __future__ import annotations

from functools import lru_cache
import hashlib
import hmac
import secrets

from cero.core.config import get_settings


@lru_cache
def _process_secret() -> str:
    return secrets.token_hex(32)


def _csrf_key() -> bytes:
    configured = get_settings().csrf_secret
    if configured is not None and configured.get_secret_value():
        return configured.get_secret_value().encode("utf-8")
    return _process_secret().encode("utf-8")


def issue_csrf_token(session_token: str) -> str:
    # Bind form tokens to the session so a token is useless outside it.
    return hmac.new(_csrf_key(), session_token.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_csrf_token(session_token: str | None, candidate: str | None) -> bool:
    if not session_token or not candidate:
        return False
    # Bytes on both sides; compare_digest rejects non-ASCII str input.
    expected = issue_csrf_token(session_token).encode("ascii")
    return hmac.compare_digest(expected, candidate.encode("utf-8"))
