# local auth provider: email/password accounts kept beside the profiles
from __future__ import annotations

import asyncio
import uuid
from typing import Callable, List, Optional

from passlib.context import CryptContext

from db.codec import encode_user, utcnow
from db.database import DocumentStore
from db.errors import AuthError, ValidationError
from db.models import Identity, User, UserRole
from utils.config import COLLECTION_AUTH, COLLECTION_USERS
from utils.logger import get_logger

_logger = get_logger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

AuthListener = Callable[[Optional[Identity]], None]


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class LocalAuthProvider:
    """
    Accounts live in the auth collection keyed by email and carry an opaque
    uid. Signing up also writes the user's profile with the customer role.
    """

    def __init__(self, store: DocumentStore):
        self.store = store
        self._current: Optional[Identity] = None
        self._listeners: List[AuthListener] = []

    def current_identity(self) -> Optional[Identity]:
        return self._current

    def require_identity(self) -> Identity:
        if self._current is None:
            raise AuthError("No user is signed in.")
        return self._current

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_current(self, identity: Optional[Identity]) -> None:
        self._current = identity
        for listener in list(self._listeners):
            listener(identity)

    async def sign_up(self, email: str, password: str, name: str) -> Identity:
        email = _normalize_email(email)
        if not email or "@" not in email:
            raise ValidationError("A valid email is required.")
        if not password:
            raise ValidationError("Password cannot be empty.")
        if not (name or "").strip():
            raise ValidationError("Name cannot be empty.")

        uid = uuid.uuid4().hex
        # off the event loop and outside the write lock
        password_hash = await asyncio.to_thread(pwd_context.hash, password)
        async with self.store.transaction() as txn:
            if await txn.get(COLLECTION_AUTH, email) is not None:
                raise AuthError(f"{email} is already registered.")
            await txn.set(
                COLLECTION_AUTH,
                email,
                {
                    "uid": uid,
                    "email": email,
                    "passwordHash": password_hash,
                    "createdAt": utcnow(),
                },
            )
            profile = User(
                id=uid, email=email, name=name.strip(), role=UserRole.CUSTOMER, brands=()
            )
            await txn.set(COLLECTION_USERS, email, encode_user(profile))

        _logger.info(f"Registered {email}")
        identity = Identity(uid=uid, email=email)
        self._set_current(identity)
        return identity

    async def sign_in(self, email: str, password: str) -> Identity:
        email = _normalize_email(email)
        snap = await self.store.get_document(COLLECTION_AUTH, email)
        stored_hash = snap.data.get("passwordHash") if snap else None
        verified = isinstance(stored_hash, str) and await asyncio.to_thread(
            pwd_context.verify, password, stored_hash
        )
        if not verified:
            _logger.warning(f"Rejected sign in for {email}")
            raise AuthError("Invalid email or password.")
        identity = Identity(uid=str(snap.data.get("uid") or email), email=email)
        self._set_current(identity)
        _logger.info(f"Signed in {email}")
        return identity

    async def sign_out(self) -> None:
        if self._current is None:
            return
        _logger.info(f"Signed out {self._current.email}")
        self._set_current(None)
