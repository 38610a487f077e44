# role based permission policy
from db.errors import PermissionDenied
from db.models import User, UserRole
from utils.logger import get_logger

_logger = get_logger(__name__)

STAFF_ROLES = {UserRole.EMPLOYEE, UserRole.ACCOUNT_MANAGER, UserRole.ADMIN}
MANAGER_ROLES = {UserRole.ACCOUNT_MANAGER, UserRole.ADMIN}


def can_message(user: User, target_role: UserRole) -> bool:
    if user.role == UserRole.CUSTOMER:
        return target_role == UserRole.CUSTOMER
    if user.role in (UserRole.ACCOUNT_MANAGER, UserRole.EMPLOYEE):
        return target_role in (UserRole.EMPLOYEE, UserRole.ACCOUNT_MANAGER)
    if user.role == UserRole.ADMIN:
        return True
    return False


def can_manage_orders(user: User) -> bool:
    """Order deletion."""
    return user.role in MANAGER_ROLES


def can_edit_orders(user: User) -> bool:
    """Status, item and attachment changes."""
    return user.role in STAFF_ROLES


def can_delete_chats(user: User) -> bool:
    return user.role in MANAGER_ROLES


def can_create_or_delete_users(user: User) -> bool:
    return user.role == UserRole.ADMIN


def can_change_roles(user: User) -> bool:
    return user.role == UserRole.ADMIN


def require(allowed: bool, action: str, user: User) -> None:
    """Raise PermissionDenied unless allowed."""
    if allowed:
        return
    _logger.warning(f"{user.email} ({user.role.value}) denied: {action}")
    raise PermissionDenied(f"A {user.role.value} may not {action}.")
