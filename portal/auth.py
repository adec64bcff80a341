"""
Authentication and authorization for the portal.

Login checks an email/password pair against the credential store, upserts
the principal and opens a server-side session. The cookie carries only the
session id, signed with itsdangerous; everything else lives in the store.
"""
from __future__ import annotations

import logging
import secrets
from datetime import timedelta

from itsdangerous import BadData, URLSafeTimedSerializer
from starlette.responses import Response

from portal.credentials import Account, Credential, CredentialStore, normalize_email
from portal.errors import Forbidden, InvalidCredentials, Unauthorized
from portal.schemas import Principal, SessionRecord
from portal.storage import Storage
from portal.utils import utcnow

log = logging.getLogger(__name__)

SESSION_TTL = timedelta(days=7)
SESSION_COOKIE = "portal.sid"
_COOKIE_SALT = "portal.session"


# ---------------------------------------------------------------------------
# Authenticator
# ---------------------------------------------------------------------------


class Authenticator:
    def __init__(self, credentials: CredentialStore, storage: Storage) -> None:
        self.credentials = credentials
        self.storage = storage
        # Checked when the email is unknown so both failures cost one key derivation.
        self._decoy = Credential.from_account(Account(
            id="", email="", password=secrets.token_urlsafe(16), first_name="", last_name="", role="investor",
        ))

    def login(self, email: str, password: str) -> Principal:
        """Verify credentials and upsert the principal.

        Unknown email and wrong password both raise ``InvalidCredentials``.
        """
        normalized = normalize_email(email)
        cred = self.credentials.lookup(normalized)
        verified = (cred or self._decoy).verify(password)
        if cred is None or not verified:
            log.warning("login_failed email=%s", normalized)
            raise InvalidCredentials()
        principal = self.storage.upsert_user(Principal(
            id=cred.id, email=cred.email, first_name=cred.first_name,
            last_name=cred.last_name, role=cred.role,
        ))
        log.info("login_succeeded principal=%s", principal.id)
        return principal


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Server-side sessions with a fixed TTL from creation (no sliding expiry)."""

    def __init__(self, storage: Storage, secret: str, ttl: timedelta = SESSION_TTL,
                 cookie_secure: bool = False) -> None:
        if not secret:
            raise RuntimeError("A session signing secret is required")
        self.storage = storage
        self.ttl = ttl
        self.cookie_secure = cookie_secure
        self._signer = URLSafeTimedSerializer(secret, salt=_COOKIE_SALT)

    def start(self, principal: Principal) -> tuple[SessionRecord, str]:
        record = SessionRecord.new(secrets.token_urlsafe(32), principal.id, utcnow(), self.ttl)
        self.storage.create_session(record)
        return record, self._signer.dumps(record.id)

    def session_id(self, cookie_value: str | None) -> str | None:
        """Unsign a cookie value; ``None`` for missing, tampered or stale cookies."""
        if not cookie_value:
            return None
        try:
            return self._signer.loads(cookie_value, max_age=int(self.ttl.total_seconds()))
        except BadData:
            return None

    def load(self, cookie_value: str | None) -> Principal | None:
        session_id = self.session_id(cookie_value)
        if session_id is None:
            return None
        record = self.storage.get_session(session_id)
        if record is None:
            return None
        if record.is_expired(utcnow()):
            self.storage.delete_session(record.id)
            return None
        return self.storage.get_user(record.principal_id)

    def logout(self, cookie_value: str | None) -> bool:
        session_id = self.session_id(cookie_value)
        if session_id is None:
            return False
        destroyed = self.storage.delete_session(session_id)
        if destroyed:
            log.info("logout session=%s", session_id[:8])
        return destroyed

    def purge_expired(self) -> int:
        return self.storage.purge_expired_sessions(utcnow())

    def set_cookie(self, response: Response, value: str) -> None:
        response.set_cookie(
            SESSION_COOKIE, value,
            max_age=int(self.ttl.total_seconds()),
            path="/",
            httponly=True,
            samesite="strict",
            secure=self.cookie_secure,
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            SESSION_COOKIE, path="/", httponly=True, samesite="strict", secure=self.cookie_secure,
        )


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def require_authenticated(principal: Principal | None) -> Principal:
    if principal is None:
        raise Unauthorized()
    return principal


def require_admin(principal: Principal | None) -> Principal:
    principal = require_authenticated(principal)
    if not principal.is_admin:
        raise Forbidden()
    return principal
