from __future__ import annotations

import hashlib
import hmac
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from itertools import count
from threading import RLock
from typing import Callable, Optional
from uuid import uuid4

import jwt

logger = logging.getLogger("coaching_crm.identity")

MIN_PASSWORD_LENGTH = 6
PASSWORD_PROVIDER = "password"
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PBKDF2_ROUNDS = 120_000


class IdentityErrorCode(str, Enum):
    invalid_credential = "invalid_credential"
    popup_closed = "popup_closed"
    account_exists_different_credential = "account_exists_different_credential"
    email_in_use = "email_in_use"
    weak_password = "weak_password"
    invalid_email = "invalid_email"
    other = "other"


class IdentityError(Exception):
    def __init__(self, code: IdentityErrorCode, detail: str = "") -> None:
        super().__init__(detail or code.value)
        self.code = code


@dataclass(frozen=True)
class Identity:
    uid: str
    email: Optional[str]
    display_name: Optional[str] = None
    provider: str = PASSWORD_PROVIDER


@dataclass
class _Account:
    identity: Identity
    password_salt: Optional[bytes] = None
    password_hash: Optional[bytes] = None


def _hash_password(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, _PBKDF2_ROUNDS)


class LocalIdentityProvider:
    """Account registry standing in for the hosted identity service."""

    def __init__(
        self,
        *,
        federated_token_secret: str,
        federated_provider_name: str = "google.com",
        federated_algorithm: str = "HS256",
    ) -> None:
        self._lock = RLock()
        self._accounts: dict[str, _Account] = {}
        self.federated_token_secret = federated_token_secret
        self.federated_provider_name = federated_provider_name
        self.federated_algorithm = federated_algorithm

    @staticmethod
    def _email_key(email: str) -> str:
        return email.strip().lower()

    def create_account(self, email: str, password: str) -> Identity:
        email = email.strip()
        if not _EMAIL_PATTERN.match(email):
            raise IdentityError(IdentityErrorCode.invalid_email)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise IdentityError(IdentityErrorCode.weak_password)
        with self._lock:
            if self._email_key(email) in self._accounts:
                raise IdentityError(IdentityErrorCode.email_in_use)
            salt = os.urandom(16)
            identity = Identity(uid=uuid4().hex, email=email, provider=PASSWORD_PROVIDER)
            self._accounts[self._email_key(email)] = _Account(
                identity=identity,
                password_salt=salt,
                password_hash=_hash_password(password, salt),
            )
            return identity

    def verify_credential(self, email: str, password: str) -> Identity:
        with self._lock:
            account = self._accounts.get(self._email_key(email))
        if not account or account.password_hash is None or account.password_salt is None:
            raise IdentityError(IdentityErrorCode.invalid_credential)
        candidate = _hash_password(password, account.password_salt)
        if not hmac.compare_digest(candidate, account.password_hash):
            raise IdentityError(IdentityErrorCode.invalid_credential)
        return account.identity

    def verify_federated_token(self, id_token: Optional[str]) -> Identity:
        if not id_token:
            raise IdentityError(IdentityErrorCode.popup_closed)
        try:
            claims = jwt.decode(
                id_token,
                self.federated_token_secret,
                algorithms=[self.federated_algorithm],
            )
        except jwt.InvalidTokenError as exc:
            raise IdentityError(IdentityErrorCode.other, "invalid federated token") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise IdentityError(IdentityErrorCode.other, "federated token missing subject")
        email = claims.get("email") if isinstance(claims.get("email"), str) else None
        name = claims.get("name") if isinstance(claims.get("name"), str) else None

        with self._lock:
            if email:
                existing = self._accounts.get(self._email_key(email))
                if existing:
                    if existing.identity.provider != self.federated_provider_name:
                        raise IdentityError(IdentityErrorCode.account_exists_different_credential)
                    return existing.identity
            identity = Identity(
                uid=f"{self.federated_provider_name}:{subject.strip()}",
                email=email,
                display_name=name,
                provider=self.federated_provider_name,
            )
            if email:
                self._accounts[self._email_key(email)] = _Account(identity=identity)
            return identity


IdentityListener = Callable[[Optional[Identity]], None]


class IdentityGateway:
    """One signed-in client of the identity provider (one browser tab in the hosted setup)."""

    def __init__(self, provider: LocalIdentityProvider) -> None:
        self._provider = provider
        self._lock = RLock()
        self._current: Optional[Identity] = None
        self._listeners: dict[int, IdentityListener] = {}
        self._listener_ids = count(1)

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    def sign_in_with_credential(self, email: str, password: str) -> Identity:
        identity = self._provider.verify_credential(email, password)
        self._set_current(identity)
        return identity

    def sign_in_with_federated(self, id_token: Optional[str]) -> Identity:
        identity = self._provider.verify_federated_token(id_token)
        self._set_current(identity)
        return identity

    def sign_up_with_credential(self, email: str, password: str) -> Identity:
        identity = self._provider.create_account(email, password)
        self._set_current(identity)
        return identity

    def sign_out(self) -> None:
        self._set_current(None)

    def on_identity_change(self, callback: IdentityListener) -> Callable[[], None]:
        with self._lock:
            listener_id = next(self._listener_ids)
            self._listeners[listener_id] = callback
            current = self._current
        callback(current)

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        return unsubscribe

    def _set_current(self, identity: Optional[Identity]) -> None:
        with self._lock:
            self._current = identity
            listeners = list(self._listeners.values())
        for listener in listeners:
            listener(identity)
