"""
sidequest.backend.auth — Credentials, Persisted Sessions & Auth-State Stream
=============================================================================

Sign-in checks an email/password pair against bcrypt hashes in
``auth_credentials``.  A session is an HS256 JWT (PyJWT) plus the user it
identifies.  It is written to a small JSON file so it survives restarts, and
every transition (sign-in, sign-out, refresh, deletion) is broadcast on the
auth-state stream.

Listeners get an ``INITIAL_SESSION`` event as soon as they subscribe, which
means the stream can fire before the application has finished booting.  The
synchronizer's race guard exists because of that.

Reserved addresses (the configured admin email) cannot be registered through
:meth:`AuthClient.sign_up`; their credentials are provisioned server-side with
:meth:`CredentialStore.set_password`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import bcrypt
import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from sidequest.database.engine import get_session, run_db
from sidequest.database.models import Credential
from sidequest.sync.events import AuthEvent, AuthEventType

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

DEFAULT_SESSION_TTL = 3600

DEFAULT_HASH_ROUNDS = 12

PASSWORD_MIN_LENGTH = 8
# bcrypt only looks at the first 72 bytes
PASSWORD_MAX_BYTES = 72

_WEAK_SECRETS = frozenset({
    "sidequest-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

# Stable user ids per email address
_USER_NAMESPACE = uuid.UUID("5b0c8a3e-6f7d-4e55-9a51-3c1d2f0b7e42")


class AuthError(Exception):
    """A sign-in or sign-up request was refused (message is user-facing)."""


def load_session_secret() -> str:
    """Load and validate ``SESSION_SECRET`` from the environment.

    Raises RuntimeError if the secret is missing, too short (< 32 chars), or
    a known weak default.
    """
    secret = os.getenv("SESSION_SECRET", "")
    if not secret:
        raise RuntimeError(
            "SESSION_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"SESSION_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"SESSION_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


def user_id_for_email(email: str) -> str:
    return uuid.uuid5(_USER_NAMESPACE, email.strip().lower()).hex


def normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise AuthError(f"Invalid email address: {email!r}")
    return email


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------
def check_password_policy(password: str) -> None:
    if len(password or "") < PASSWORD_MIN_LENGTH:
        raise AuthError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise AuthError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes.")


def hash_password(password: str, rounds: int = DEFAULT_HASH_ROUNDS) -> str:
    check_password_policy(password)
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash or over-long input
        return False


class CredentialStore:
    """Synchronous access to ``auth_credentials``; call through :func:`run_db`."""

    def __init__(self, engine: Engine, rounds: int = DEFAULT_HASH_ROUNDS) -> None:
        self._engine = engine
        self._rounds = rounds

    @staticmethod
    def _public(cred: Credential) -> dict:
        return {"user_id": cred.user_id, "email": cred.email, "full_name": cred.full_name}

    def register(self, email: str, password: str, full_name: str | None = None) -> dict:
        """Create a credential.  Raises AuthError if the address is taken."""
        email = normalize_email(email)
        password_hash = hash_password(password, self._rounds)
        try:
            with get_session(self._engine) as session:
                taken = session.scalar(select(Credential).where(Credential.email == email))
                if taken is not None:
                    raise AuthError("An account with this email already exists.")
                cred = Credential(
                    user_id=user_id_for_email(email),
                    email=email,
                    password_hash=password_hash,
                    full_name=full_name,
                )
                session.add(cred)
                session.flush()
                return self._public(cred)
        except IntegrityError:
            raise AuthError("An account with this email already exists.") from None

    def set_password(self, email: str, password: str, full_name: str | None = None) -> dict:
        """Create or reset a credential (server-side provisioning)."""
        email = normalize_email(email)
        password_hash = hash_password(password, self._rounds)
        with get_session(self._engine) as session:
            cred = session.scalar(select(Credential).where(Credential.email == email))
            if cred is None:
                cred = Credential(user_id=user_id_for_email(email), email=email)
                session.add(cred)
            cred.password_hash = password_hash
            if full_name:
                cred.full_name = full_name
            session.flush()
            return self._public(cred)

    def verify(self, email: str, password: str) -> dict | None:
        """Return the credential's public fields if *password* matches."""
        with get_session(self._engine) as session:
            cred = session.scalar(select(Credential).where(Credential.email == email))
            if cred is None or not verify_password(password or "", cred.password_hash):
                return None
            return self._public(cred)

    def remove(self, user_id: str) -> bool:
        with get_session(self._engine) as session:
            cred = session.get(Credential, user_id)
            if cred is None:
                return False
            session.delete(cred)
            return True


@dataclass(frozen=True, slots=True)
class Session:
    access_token: str
    user_id: str
    email: str
    full_name: str | None
    expires_at: int

    def expires_within(self, seconds: float, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.expires_at - now <= seconds


class SessionStore:
    """JSON file holding the last session; absent file means guest."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> dict | None:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError):
            logger.warning("Unreadable session file %s — treating as guest", self.path)
            return None
        return data if isinstance(data, dict) else None

    def save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as fh:
            json.dump(data, fh)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class AuthClient:
    """Issues, persists, refreshes and revokes sessions.

    Usage::

        auth = AuthClient(SessionStore(".sidequest_session.json"), secret,
                          CredentialStore(engine))
        events = auth.on_auth_state_change()   # INITIAL_SESSION queued now
        session = await auth.get_session()     # None → guest
        session = await auth.sign_in("tara@example.com", "correct horse")
    """

    def __init__(
        self,
        store: SessionStore,
        secret: str,
        credentials: CredentialStore,
        ttl_seconds: int = DEFAULT_SESSION_TTL,
        reserved_emails: Iterable[str] = (),
    ) -> None:
        self._store = store
        self._secret = secret
        self._credentials = credentials
        self._ttl = ttl_seconds
        self._reserved = frozenset(e.strip().lower() for e in reserved_emails if e)
        self._listeners: list[asyncio.Queue[AuthEvent]] = []
        self._session: Session | None = self._restore()


    # -------------------------------------------------------------------
    # Token helpers
    # -------------------------------------------------------------------
    def _issue(self, user_id: str, email: str, full_name: str | None) -> Session:
        expires_at = int(time.time()) + self._ttl
        token = jwt.encode(
            {"sub": user_id, "email": email, "name": full_name, "exp": expires_at},
            self._secret,
            algorithm=JWT_ALGORITHM,
        )
        return Session(
            access_token=token,
            user_id=user_id,
            email=email,
            full_name=full_name,
            expires_at=expires_at,
        )

    def _restore(self) -> Session | None:
        """Rebuild the persisted session; expired tokens are re-issued."""
        data = self._store.load()
        if not data or "access_token" not in data:
            return None
        try:
            payload = jwt.decode(data["access_token"], self._secret, algorithms=[JWT_ALGORITHM])
        except ExpiredSignatureError:
            payload = jwt.decode(
                data["access_token"],
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"verify_exp": False},
            )
            logger.info("Persisted session expired — refreshing for %s", payload.get("email"))
            session = self._issue(payload["sub"], payload["email"], payload.get("name"))
            self._store.save(asdict(session))
            return session
        except InvalidTokenError:
            logger.warning("Persisted session token is invalid — discarding")
            self._store.clear()
            return None
        return Session(
            access_token=data["access_token"],
            user_id=payload["sub"],
            email=payload["email"],
            full_name=payload.get("name"),
            expires_at=int(payload["exp"]),
        )

    # -------------------------------------------------------------------
    # Auth-state stream
    # -------------------------------------------------------------------
    def on_auth_state_change(self) -> asyncio.Queue[AuthEvent]:
        """Return a queue receiving every auth event from now on.

        An ``INITIAL_SESSION`` event carrying the current session (or None)
        is queued immediately.
        """
        queue: asyncio.Queue[AuthEvent] = asyncio.Queue()
        self._listeners.append(queue)
        queue.put_nowait(AuthEvent(AuthEventType.INITIAL_SESSION, self._session))
        return queue

    def remove_listener(self, queue: asyncio.Queue[AuthEvent]) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    def _emit(self, event_type: AuthEventType) -> None:
        event = AuthEvent(event_type, self._session)
        logger.info("Auth event %s (listeners=%d)", event_type, len(self._listeners))
        for queue in list(self._listeners):
            queue.put_nowait(event)

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    @property
    def current_session(self) -> Session | None:
        return self._session

    async def get_session(self) -> Session | None:
        """Return the persisted session, refreshing it if close to expiry."""
        if self._session is not None and self._session.expires_within(60):
            await self.refresh_session()
        return self._session

    def _start_session(self, user_id: str, email: str, full_name: str | None) -> Session:
        self._session = self._issue(user_id, email, full_name)
        self._store.save(asdict(self._session))
        self._emit(AuthEventType.SIGNED_IN)
        return self._session

    async def sign_in(self, email: str, password: str) -> Session:
        """Check *password* for *email* and start a session.

        Raises AuthError on a malformed address or a wrong email/password pair
        (one message for both, so addresses cannot be enumerated).
        """
        email = normalize_email(email)
        cred = await run_db(self._credentials.verify, email, password)
        if cred is None:
            logger.warning("Failed sign-in for %s", email)
            raise AuthError("Invalid email or password.")
        return self._start_session(cred["user_id"], cred["email"], cred["full_name"])

    async def sign_up(self, email: str, password: str, full_name: str | None = None) -> Session:
        """Register a new account and sign it in."""
        email = normalize_email(email)
        if email in self._reserved:
            logger.warning("Refused sign-up for reserved address %s", email)
            raise AuthError("This email address cannot be registered.")
        check_password_policy(password)
        cred = await run_db(self._credentials.register, email, password, full_name)
        logger.info("Registered %s", email)
        return self._start_session(cred["user_id"], cred["email"], cred["full_name"])

    async def sign_out(self) -> None:
        self._session = None
        self._store.clear()
        self._emit(AuthEventType.SIGNED_OUT)

    async def refresh_session(self) -> Session | None:
        if self._session is None:
            return None
        s = self._session
        self._session = self._issue(s.user_id, s.email, s.full_name)
        self._store.save(asdict(self._session))
        self._emit(AuthEventType.TOKEN_REFRESHED)
        return self._session

    async def delete_user(self) -> None:
        """Remove the signed-in user's credential and end the session."""
        if self._session is not None:
            await run_db(self._credentials.remove, self._session.user_id)
            logger.info("Deleted credential for %s", self._session.email)
        self._session = None
        self._store.clear()
        self._emit(AuthEventType.USER_DELETED)
