"""Caller-visible status taxonomy for the account RPC surface."""

from __future__ import annotations

from enum import Enum

from ..domain.errors import (
    AccountConflict,
    AccountError,
    AccountNotFound,
    InvalidHandle,
    InvalidPhone,
)

INTERNAL_MESSAGE = "internal server error"


class StatusCode(str, Enum):
    ok = "ok"
    invalid_argument = "invalid_argument"
    already_exists = "already_exists"
    not_found = "not_found"
    internal = "internal"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    StatusCode.ok: 200,
    StatusCode.invalid_argument: 400,
    StatusCode.already_exists: 409,
    StatusCode.not_found: 404,
    StatusCode.internal: 500,
}


class RPCError(Exception):
    """Error reported to the caller as ``{"code": ..., "msg": ...}``."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def rpc_error_from_domain(exc: AccountError) -> RPCError:
    """Map a domain error to its status class; unknown errors lose their detail."""
    if isinstance(exc, (InvalidHandle, InvalidPhone)):
        return RPCError(StatusCode.invalid_argument, str(exc))
    if isinstance(exc, AccountConflict):
        return RPCError(StatusCode.already_exists, str(exc))
    if isinstance(exc, AccountNotFound):
        return RPCError(StatusCode.not_found, str(exc))
    return RPCError(StatusCode.internal, INTERNAL_MESSAGE)
