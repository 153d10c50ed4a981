import inspect
import logging
import os
import re
import time
import uuid
from collections.abc import Callable
from typing import Any

from marketplace.core.errors import AuthFailed, IdentityTaken, ValidationFailed
from marketplace.core.security import hash_secret, verify_secret
from marketplace.store.base import KeyedStore

logger = logging.getLogger(__name__)

IDENTITY_DOMAIN = os.getenv("IDENTITY_DOMAIN", "vcm.com")
USERNAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")
MIN_USERNAME_LENGTH = 3
MIN_SECRET_LENGTH = 6

AuthStateCallback = Callable[[str | None], Any]


def validate_credentials(username: str, secret: str) -> str:
    """Return the trimmed username or raise ``ValidationFailed``."""
    trimmed = (username or "").strip()
    if len(trimmed) < MIN_USERNAME_LENGTH:
        raise ValidationFailed("Username too short.")
    if "@" in trimmed:
        raise ValidationFailed("Please use a username.")
    if not USERNAME_RE.match(trimmed):
        raise ValidationFailed("Invalid characters in username.")
    if len(secret or "") < MIN_SECRET_LENGTH:
        raise ValidationFailed("Password must be 6+ chars.")
    return trimmed


def identity_address(username: str) -> str:
    return f"{username.strip()}@{IDENTITY_DOMAIN}".lower()


def username_from_address(address: str | None) -> str:
    local = (address or "").split("@", 1)[0]
    return local or "User"


def _credential_path(address: str) -> str:
    return f"credentials/{address.replace('.', ',')}"


class AuthHandle:
    def __init__(self, provider: "AuthProvider", callback: AuthStateCallback) -> None:
        self._provider = provider
        self.callback = callback

    def cancel(self) -> None:
        self._provider.remove_listener(self)


class AuthProvider:
    """Username/secret authentication kept in the keyed store.

    Usernames map to a synthetic address; no mail is ever sent to it.
    ``current_uid`` is the signed-in actor of this provider instance, and
    listeners registered with ``on_auth_state_change`` hear every transition.
    """

    def __init__(self, store: KeyedStore, clock=time.time) -> None:
        self._store = store
        self._clock = clock
        self._listeners: list[AuthHandle] = []
        self.current_uid: str | None = None
        self.current_address: str | None = None

    async def sign_up(self, username: str, secret: str) -> str:
        address = identity_address(username)
        path = _credential_path(address)
        if await self._store.get(path) is not None:
            raise IdentityTaken("Username taken.")
        uid = uuid.uuid4().hex
        await self._store.set(
            path,
            {
                "uid": uid,
                "address": address,
                "hashed_secret": hash_secret(secret),
                "createdAt": int(self._clock() * 1000),
            },
        )
        logger.info("auth_sign_up uid=%s", uid)
        await self._transition(uid, address)
        return uid

    async def verify(self, username: str, secret: str) -> str:
        address = identity_address(username)
        record = await self._store.get(_credential_path(address))
        if not record or not verify_secret(secret, record.get("hashed_secret", "")):
            raise AuthFailed("Invalid username or password.")
        return record["uid"]

    async def sign_in(self, username: str, secret: str) -> str:
        uid = await self.verify(username, secret)
        logger.info("auth_sign_in uid=%s", uid)
        await self._transition(uid, identity_address(username))
        return uid

    async def sign_out(self) -> None:
        if self.current_uid is None:
            return
        logger.info("auth_sign_out uid=%s", self.current_uid)
        await self._transition(None, None)

    async def on_auth_state_change(self, callback: AuthStateCallback) -> AuthHandle:
        handle = AuthHandle(self, callback)
        self._listeners.append(handle)
        await self._call(handle, self.current_uid)
        return handle

    def remove_listener(self, handle: AuthHandle) -> None:
        if handle in self._listeners:
            self._listeners.remove(handle)

    async def _transition(self, uid: str | None, address: str | None) -> None:
        self.current_uid = uid
        self.current_address = address
        for handle in list(self._listeners):
            if self.current_uid != uid:
                # a listener already moved the provider to a newer state
                break
            await self._call(handle, uid)

    @staticmethod
    async def _call(handle: AuthHandle, uid: str | None) -> None:
        result = handle.callback(uid)
        if inspect.isawaitable(result):
            await result
