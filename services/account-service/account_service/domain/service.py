"""Account service enforcing identity rules on top of the repository."""

from __future__ import annotations

import logging
import re
import secrets
import uuid
from typing import Callable, Protocol

from .account import Account
from .errors import HandleConflict, InvalidHandle, InvalidPhone

logger = logging.getLogger(__name__)

MAX_HANDLE_ATTEMPTS = 10
HANDLE_LENGTH = 10
HANDLE_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"

_HANDLE_PATTERN = re.compile(r"^@[A-Za-z0-9_]{2,30}$")
_PHONE_PATTERN = re.compile(r"^\+[1-9][0-9]{7,14}$")


class AccountStore(Protocol):
    """Persistence operations the service depends on."""

    def create(
        self, account_id: uuid.UUID, handle: str, phone: str, *, timeout: float | None = None
    ) -> Account: ...

    def get_by_id(self, account_id: uuid.UUID, *, timeout: float | None = None) -> Account: ...

    def update_handle(
        self, account_id: uuid.UUID, handle: str, *, timeout: float | None = None
    ) -> Account: ...

    def delete(self, account_id: uuid.UUID, *, timeout: float | None = None) -> None: ...


def is_valid_handle(value: str) -> bool:
    return _HANDLE_PATTERN.fullmatch(value) is not None


def is_valid_phone(value: str) -> bool:
    return _PHONE_PATTERN.fullmatch(value) is not None


def generate_handle() -> str:
    """Return ``@`` followed by random lowercase alphanumerics from a CSPRNG."""
    return "@" + "".join(secrets.choice(HANDLE_ALPHABET) for _ in range(HANDLE_LENGTH))


class AccountService:
    """Account workflows backed by Postgres storage."""

    def __init__(
        self,
        repository: AccountStore,
        *,
        handle_generator: Callable[[], str] = generate_handle,
        id_factory: Callable[[], uuid.UUID] = uuid.uuid4,
    ) -> None:
        """Store the repository and the random sources used during creation."""
        self._repository = repository
        self._generate_handle = handle_generator
        self._new_id = id_factory

    def create_account(self, phone: str, *, timeout: float | None = None) -> Account:
        """Create an account for ``phone`` with a freshly generated handle.

        The handle is picked at random and inserted; uniqueness is decided by
        the store. A handle collision is retried with a new handle up to
        ``MAX_HANDLE_ATTEMPTS`` times, every other error propagates unchanged.

        Raises
        ------
        InvalidPhone
            If ``phone`` is not an E.164-style number; storage is not touched.
        HandleConflict
            If every attempt collided with an existing handle.
        PhoneConflict
            If the phone number already belongs to an account.
        """
        phone = phone.strip()
        if not is_valid_phone(phone):
            raise InvalidPhone()

        account_id = self._new_id()
        for attempt in range(1, MAX_HANDLE_ATTEMPTS + 1):
            handle = self._generate_handle()
            try:
                return self._repository.create(account_id, handle, phone, timeout=timeout)
            except HandleConflict:
                logger.debug("handle collision on attempt %d, retrying", attempt)

        logger.warning("handle generation exhausted after %d attempts", MAX_HANDLE_ATTEMPTS)
        raise HandleConflict()

    def get_account(self, account_id: uuid.UUID, *, timeout: float | None = None) -> Account:
        """Return the active account with ``account_id``."""
        return self._repository.get_by_id(account_id, timeout=timeout)

    def update_handle(
        self, account_id: uuid.UUID, handle: str, *, timeout: float | None = None
    ) -> Account:
        """Validate ``handle`` and assign it to the active account."""
        handle = handle.strip()
        if not is_valid_handle(handle):
            raise InvalidHandle()
        return self._repository.update_handle(account_id, handle, timeout=timeout)

    def delete_account(self, account_id: uuid.UUID, *, timeout: float | None = None) -> None:
        self._repository.delete(account_id, timeout=timeout)
