from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from db.auth import LocalAuthProvider
from db.errors import NotFound
from db.models import Identity, User, UserRole
from db.users import UserDirectory
from utils.logger import get_logger
from utils.permissions import STAFF_ROLES

_logger = get_logger(__name__)


@dataclass
class GlobalState:
    """
    Centralized session state shared by screens.

    Fields:
      - identity: the signed-in auth identity, None when signed out
      - user: the profile of that identity (users/<email>)
    """

    auth: LocalAuthProvider
    users: UserDirectory
    identity: Optional[Identity] = None
    user: Optional[User] = None

    @property
    def role(self) -> Optional[UserRole]:
        return self.user.role if self.user else None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_suspended(self) -> bool:
        return self.role == UserRole.SUSPENDED

    async def _load_profile(self, identity: Identity) -> User:
        user = await self.users.get_user(identity.email)
        if user is None:
            await self.auth.sign_out()
            raise NotFound(f"No user profile for {identity.email}")
        self.identity = identity
        self.user = user
        _logger.info(f"Session started for {user.email} ({user.role.value})")
        return user

    async def sign_in(self, email: str, password: str) -> User:
        identity = await self.auth.sign_in(email, password)
        return await self._load_profile(identity)

    async def sign_up(self, email: str, password: str, name: str) -> User:
        identity = await self.auth.sign_up(email, password, name)
        return await self._load_profile(identity)

    async def refresh_user(self) -> Optional[User]:
        if self.identity is None:
            return None
        self.user = await self.users.get_user(self.identity.email)
        return self.user

    async def sign_out(self) -> None:
        """
        End the current session.
        This is only called upon logging out or quitting
        """
        await self.auth.sign_out()
        self.identity = None
        self.user = None
