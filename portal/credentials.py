"""Fixed set of portal accounts and the secret comparison used to check them.

The account list is in-process and immutable: there is no registration and no
password change. Secrets are held as salted PBKDF2 digests so the plain
passwords only exist in ``SEED_ACCOUNTS``; the same strings still authenticate.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

PBKDF2_ITERATIONS = 120_000


def normalize_email(email: str) -> str:
    return email.strip().lower()


def constant_time_equals(a: str | bytes, b: str | bytes) -> bool:
    """Compare two strings without short-circuiting on the first mismatch.

    Every position up to the longer length is visited and folded into the
    result, so the running time depends only on the lengths.
    """
    match = len(a) == len(b)
    for i in range(max(len(a), len(b))):
        left = a[i] if i < len(a) else None
        right = b[i] if i < len(b) else None
        match = (left == right) and match
    return match


def _digest(password: str, salt: bytes) -> str:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(password.encode("utf-8")).hex()


@dataclass(frozen=True)
class Account:
    id: str
    email: str
    password: str
    first_name: str
    last_name: str
    role: str  # "admin" | "investor"


@dataclass(frozen=True)
class Credential:
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    salt: bytes = field(repr=False)
    secret_digest: str = field(repr=False)

    @classmethod
    def from_account(cls, account: Account) -> Credential:
        salt = secrets.token_bytes(16)
        return cls(
            id=account.id, email=normalize_email(account.email),
            first_name=account.first_name, last_name=account.last_name,
            role=account.role, salt=salt, secret_digest=_digest(account.password, salt),
        )

    def verify(self, password: str) -> bool:
        return constant_time_equals(_digest(password, self.salt), self.secret_digest)


class CredentialStore(Protocol):
    def lookup(self, email: str) -> Credential | None: ...


class StaticCredentialStore:
    """Credential store backed by a fixed list of accounts."""

    def __init__(self, accounts: Iterable[Account]) -> None:
        self._by_email: dict[str, Credential] = {}
        for account in accounts:
            cred = Credential.from_account(account)
            self._by_email[cred.email] = cred

    def lookup(self, email: str) -> Credential | None:
        return self._by_email.get(normalize_email(email))

    def __len__(self) -> int:
        return len(self._by_email)


SEED_ACCOUNTS: tuple[Account, ...] = (
    Account(
        id="admin-001", email="hello@cynco.io", password="admin123123",
        first_name="Admin", last_name="User", role="admin",
    ),
    Account(
        id="investor-001", email="investor@cynco.io", password="investor@25!",
        first_name="Investor", last_name="User", role="investor",
    ),
    Account(
        id="demo-001", email="paan@demo.com", password="123!123!123!",
        first_name="Paan", last_name="Demo", role="investor",
    ),
)


def default_credential_store() -> StaticCredentialStore:
    return StaticCredentialStore(SEED_ACCOUNTS)
