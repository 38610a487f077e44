# user profiles: lookup, search, roles and account-manager relations
from __future__ import annotations

import dataclasses
from typing import Dict, Iterable, List, Optional, Sequence

from db.codec import decode_all, decode_user, encode_brand, encode_user
from db.database import DocumentStore
from db.errors import NotFound, ValidationError
from db.models import Brand, Filter, User, UserRole
from utils.config import COLLECTION_USERS
from utils.logger import get_logger
from utils.permissions import can_change_roles, can_create_or_delete_users, require

_logger = get_logger(__name__)

# highest code point usable in a prefix range query
_PREFIX_END = "\uf8ff"


class UserDirectory:
    """Profiles live in ``users/<email>``; ``id`` holds the auth uid."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_user(self, email: str) -> Optional[User]:
        snap = await self.store.get_document(COLLECTION_USERS, email)
        if snap is None:
            return None
        user = decode_user(snap)
        if user is None:
            _logger.warning(f"User document {email} could not be decoded.")
        return user

    async def require_user(self, email: str) -> User:
        user = await self.get_user(email)
        if user is None:
            raise NotFound(f"No user profile for {email}")
        return user

    async def get_user_by_uid(self, uid: str) -> Optional[User]:
        snaps = await self.store.query(
            COLLECTION_USERS, [Filter("id", "==", uid)], limit=1
        )
        users = decode_all(snaps, decode_user)
        return users[0] if users else None

    async def list_users(self, role: Optional[UserRole] = None) -> List[User]:
        filters = [Filter("role", "==", role.value)] if role else []
        snaps = await self.store.query(COLLECTION_USERS, filters, order_by="name")
        return decode_all(snaps, decode_user)

    async def search_users(
        self, prefix: str, role: Optional[UserRole] = None
    ) -> List[User]:
        """Name prefix search (case-sensitive, like the hosted store's range query)."""
        prefix = (prefix or "").strip()
        if not prefix:
            return []
        filters = [
            Filter("name", ">=", prefix),
            Filter("name", "<=", prefix + _PREFIX_END),
        ]
        if role is not None:
            filters.append(Filter("role", "==", role.value))
        snaps = await self.store.query(COLLECTION_USERS, filters, order_by="name")
        return decode_all(snaps, decode_user)

    async def save_profile(self, user: User) -> None:
        await self.store.set_document(COLLECTION_USERS, user.email, encode_user(user))

    async def create_user(
        self,
        actor: User,
        email: str,
        name: str,
        role: UserRole = UserRole.CUSTOMER,
        uid: Optional[str] = None,
    ) -> User:
        """Create a profile on behalf of an admin (the auth account is separate)."""
        require(can_create_or_delete_users(actor), "create users", actor)
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise ValidationError("A valid email is required.")
        if await self.get_user(email) is not None:
            raise ValidationError(f"{email} already has a profile.")
        user = User(id=uid or email, email=email, name=name.strip(), role=role, brands=())
        await self.save_profile(user)
        _logger.info(f"{actor.email} created user {email} as {role.value}")
        return user

    async def delete_user(self, actor: User, email: str) -> None:
        require(can_create_or_delete_users(actor), "delete users", actor)
        await self.require_user(email)
        await self.store.delete_document(COLLECTION_USERS, email)

    async def update_role(self, actor: User, email: str, role: UserRole) -> User:
        require(can_change_roles(actor), "change roles", actor)
        user = await self.require_user(email)
        await self.store.update_fields(COLLECTION_USERS, email, {"role": role.value})
        _logger.info(f"{actor.email} changed role of {email} to {role.value}")
        return dataclasses.replace(user, role=role)

    async def update_profile(
        self,
        email: str,
        name: Optional[str] = None,
        profile_picture_url: Optional[str] = None,
        brands: Optional[Sequence[Brand]] = None,
    ) -> User:
        user = await self.require_user(email)
        fields: Dict[str, object] = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("Name cannot be empty.")
            fields["name"] = name.strip()
        if profile_picture_url is not None:
            fields["profilePictureUrl"] = profile_picture_url
        if brands is not None:
            fields["brands"] = [encode_brand(b) for b in brands]
        if not fields:
            return user
        await self.store.update_fields(COLLECTION_USERS, email, fields)
        return dataclasses.replace(
            user,
            name=fields.get("name", user.name),
            profile_picture_url=profile_picture_url or user.profile_picture_url,
            brands=tuple(brands) if brands is not None else user.brands,
        )

    async def save_push_token(self, email: str, token: str) -> None:
        """Store the device token, creating a bare profile when none exists."""
        snap = await self.store.get_document(COLLECTION_USERS, email)
        if snap is None:
            await self.store.set_document(
                COLLECTION_USERS, email, {"email": email, "fcmToken": token}
            )
            _logger.info(f"Created user document with push token for {email}")
            return
        await self.store.update_fields(COLLECTION_USERS, email, {"fcmToken": token})
        _logger.info(f"Push token updated for {email}")

    async def assign_customers(
        self, actor: User, manager_email: str, customer_emails: Iterable[str]
    ) -> User:
        """
        Link customers to an account manager in one atomic write: the manager's
        customerIds gains every customer, each customer points back at the manager.
        """
        require(can_change_roles(actor), "assign customers", actor)
        customer_emails = list(dict.fromkeys(customer_emails))
        async with self.store.transaction() as txn:
            manager_snap = await txn.get(COLLECTION_USERS, manager_email)
            manager = decode_user(manager_snap) if manager_snap else None
            if manager is None:
                raise NotFound(f"No user profile for {manager_email}")
            if manager.role != UserRole.ACCOUNT_MANAGER:
                raise ValidationError(f"{manager_email} is not an account manager.")
            for email in customer_emails:
                if await txn.get(COLLECTION_USERS, email) is None:
                    raise NotFound(f"No user profile for {email}")

            merged = tuple(dict.fromkeys([*manager.customer_ids, *customer_emails]))
            await txn.update(COLLECTION_USERS, manager_email, {"customerIds": list(merged)})
            for email in customer_emails:
                await txn.update(
                    COLLECTION_USERS, email, {"accountManagerId": manager_email}
                )
        _logger.info(f"Assigned {len(customer_emails)} customers to {manager_email}")
        return dataclasses.replace(manager, customer_ids=merged)
