from __future__ import annotations


class CeroError(Exception):
    """Base error for Cero."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InputError(CeroError):
    """Malformed or incomplete request input."""


class AuthError(CeroError):
    """Missing, invalid or expired credentials or session."""


class AuthorizationError(CeroError):
    """Authenticated caller lacks the role or entitlement required."""


class StorageError(CeroError):
    """Transaction failure or lost connection in the persistent store."""


class ConsistencyViolation(CeroError):
    """Subscription and ledger writes disagree; the transaction must not commit."""
