"""RPC method definitions for the account service."""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from ..config import get_settings
from ..domain.account import Account
from ..domain.service import AccountService
from .interceptors import ObservedRoute
from .status import RPCError, StatusCode

SERVICE_NAME = "account.v1.AccountService"

router = APIRouter(prefix=f"/rpc/{SERVICE_NAME}", tags=["accounts"], route_class=ObservedRoute)


class AccountMessage(BaseModel):
    """Serialised representation of an `Account` aggregate."""

    id: str
    handle: str
    phone: str
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @classmethod
    def from_domain(cls, account: Account) -> "AccountMessage":
        """Build a wire message from the domain aggregate."""
        return cls(
            id=str(account.account_id),
            handle=account.handle,
            phone=account.phone,
            created_at=account.created_at,
            updated_at=account.updated_at,
            deleted_at=account.deleted_at,
        )


class AccountResponse(BaseModel):
    account: AccountMessage


class CreateAccountRequest(BaseModel):
    phone: str


class GetAccountRequest(BaseModel):
    id: str


class UpdateHandleRequest(BaseModel):
    id: str
    handle: str


class DeleteAccountRequest(BaseModel):
    id: str


class Empty(BaseModel):
    pass


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_timeout(
    x_request_timeout: str | None = Header(default=None, alias="X-Request-Timeout"),
) -> float | None:
    """Return the store deadline in seconds for this call.

    A positive ``X-Request-Timeout`` header wins over the configured default;
    a non-positive default disables the deadline.
    """
    if x_request_timeout is not None:
        try:
            requested = float(x_request_timeout)
        except ValueError as exc:
            raise RPCError(StatusCode.invalid_argument, "invalid request timeout") from exc
        if requested > 0:
            return requested
    default = get_settings().request_timeout_seconds
    return default if default > 0 else None


def parse_account_id(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError as exc:
        raise RPCError(StatusCode.invalid_argument, "invalid account id") from exc


@router.post(
    "/CreateAccount",
    name="CreateAccount",
    response_model=AccountResponse,
    response_model_exclude_none=True,
)
def create_account(
    payload: CreateAccountRequest,
    service: AccountService = Depends(get_service),
    timeout: float | None = Depends(get_timeout),
) -> AccountResponse:
    """Create an account for a phone number with a generated handle."""
    account = service.create_account(payload.phone, timeout=timeout)
    return AccountResponse(account=AccountMessage.from_domain(account))


@router.post(
    "/GetAccount",
    name="GetAccount",
    response_model=AccountResponse,
    response_model_exclude_none=True,
)
def get_account(
    payload: GetAccountRequest,
    service: AccountService = Depends(get_service),
    timeout: float | None = Depends(get_timeout),
) -> AccountResponse:
    """Retrieve an active account by identifier."""
    account_id = parse_account_id(payload.id)
    account = service.get_account(account_id, timeout=timeout)
    return AccountResponse(account=AccountMessage.from_domain(account))


@router.post(
    "/UpdateHandle",
    name="UpdateHandle",
    response_model=AccountResponse,
    response_model_exclude_none=True,
)
def update_handle(
    payload: UpdateHandleRequest,
    service: AccountService = Depends(get_service),
    timeout: float | None = Depends(get_timeout),
) -> AccountResponse:
    """Replace the handle of an active account."""
    account_id = parse_account_id(payload.id)
    account = service.update_handle(account_id, payload.handle, timeout=timeout)
    return AccountResponse(account=AccountMessage.from_domain(account))


@router.post("/DeleteAccount", name="DeleteAccount", response_model=Empty)
def delete_account(
    payload: DeleteAccountRequest,
    service: AccountService = Depends(get_service),
    timeout: float | None = Depends(get_timeout),
) -> Empty:
    """Soft-delete an active account."""
    service.delete_account(parse_account_id(payload.id), timeout=timeout)
    return Empty()
