"""Domain error taxonomy raised by the account service and its repository."""

from __future__ import annotations

from enum import Enum


class ConflictKind(str, Enum):
    """Which uniqueness constraint rejected a write."""

    handle = "handle"
    phone = "phone"
    unknown = "unknown"


class AccountError(Exception):
    """Base class for every error the account domain surfaces."""

    message = "account error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidHandle(AccountError):
    message = "invalid handle"


class InvalidPhone(AccountError):
    message = "invalid phone"


class AccountConflict(AccountError):
    """A uniqueness constraint was violated in storage."""

    kind = ConflictKind.unknown


class HandleConflict(AccountConflict):
    message = "handle already exists"
    kind = ConflictKind.handle


class PhoneConflict(AccountConflict):
    message = "phone already exists"
    kind = ConflictKind.phone


class AccountNotFound(AccountError):
    message = "account not found"


class StorageFailure(AccountError):
    """Unclassified storage error; the original exception is kept as ``__cause__``."""

    message = "storage failure"


def conflict_for(kind: ConflictKind) -> AccountConflict:
    """Return the domain conflict error for a classified constraint violation.

    Violations that cannot be attributed to a known constraint are reported as
    handle conflicts.
    """
    if kind is ConflictKind.phone:
        return PhoneConflict()
    return HandleConflict()
