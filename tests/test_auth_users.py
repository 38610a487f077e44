import asyncio
import os
import sys
import tempfile
import unittest
from unittest import mock

# Ensure project src/ is on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
src_path = os.path.join(ROOT, "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from db.auth import LocalAuthProvider, pwd_context
from db.database import DocumentStore
from db.errors import AuthError, NotFound, PermissionDenied, ValidationError
from db.models import User, UserRole
from db.users import UserDirectory
from utils.config import COLLECTION_AUTH, COLLECTION_USERS
from utils.permissions import (
    can_change_roles,
    can_delete_chats,
    can_edit_orders,
    can_manage_orders,
    can_message,
)
from utils.state import GlobalState

ADMIN = User("u-admin", "admin@example.com", "Admin", UserRole.ADMIN)
MANAGER = User("u-am", "am@example.com", "Manager", UserRole.ACCOUNT_MANAGER)
EMPLOYEE = User("u-emp", "emp@example.com", "Employee", UserRole.EMPLOYEE)
CUSTOMER = User("u-cust", "cust@example.com", "Customer", UserRole.CUSTOMER)
SUSPENDED = User("u-sus", "sus@example.com", "Suspended", UserRole.SUSPENDED)


class PermissionsTestCase(unittest.TestCase):
    def test_messaging_matrix(self):
        self.assertTrue(can_message(CUSTOMER, UserRole.CUSTOMER))
        self.assertFalse(can_message(CUSTOMER, UserRole.EMPLOYEE))
        self.assertTrue(can_message(EMPLOYEE, UserRole.ACCOUNT_MANAGER))
        self.assertTrue(can_message(MANAGER, UserRole.EMPLOYEE))
        self.assertFalse(can_message(MANAGER, UserRole.CUSTOMER))
        for role in UserRole:
            self.assertTrue(can_message(ADMIN, role))
            self.assertFalse(can_message(SUSPENDED, role))

    def test_order_and_chat_rights(self):
        self.assertEqual(
            [can_manage_orders(u) for u in (ADMIN, MANAGER, EMPLOYEE, CUSTOMER)],
            [True, True, False, False],
        )
        self.assertEqual(
            [can_edit_orders(u) for u in (ADMIN, MANAGER, EMPLOYEE, CUSTOMER, SUSPENDED)],
            [True, True, True, False, False],
        )
        self.assertTrue(can_delete_chats(MANAGER))
        self.assertFalse(can_delete_chats(EMPLOYEE))
        self.assertTrue(can_change_roles(ADMIN))
        self.assertFalse(can_change_roles(MANAGER))


class AuthTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = DocumentStore(os.path.join(self.temp_dir.name, "test.sqlite"))
        self.auth = LocalAuthProvider(self.store)
        self.users = UserDirectory(self.store)

    def tearDown(self):
        self.temp_dir.cleanup()

    async def test_sign_up_creates_customer_profile(self):
        identity = await self.auth.sign_up(" New@Example.com ", "secret", "Newbie")
        self.assertEqual(identity.email, "new@example.com")
        self.assertEqual(self.auth.current_identity(), identity)

        profile = await self.users.get_user("new@example.com")
        self.assertEqual(profile.id, identity.uid)
        self.assertEqual(profile.role, UserRole.CUSTOMER)
        self.assertEqual(profile.brands, ())

        with self.assertRaises(AuthError):
            await self.auth.sign_up("new@example.com", "other", "Again")

    async def test_sign_up_validation(self):
        with self.assertRaises(ValidationError):
            await self.auth.sign_up("not-an-email", "pw", "Name")
        with self.assertRaises(ValidationError):
            await self.auth.sign_up("a@example.com", "", "Name")
        with self.assertRaises(ValidationError):
            await self.auth.sign_up("a@example.com", "pw", "  ")

    async def test_sign_in_and_listeners(self):
        await self.auth.sign_up("a@example.com", "pw", "A")
        await self.auth.sign_out()

        seen = []
        unsubscribe = self.auth.on_auth_state_change(seen.append)
        with self.assertRaises(AuthError):
            await self.auth.sign_in("a@example.com", "wrong")
        with self.assertRaises(AuthError):
            await self.auth.sign_in("nobody@example.com", "pw")
        identity = await self.auth.sign_in("A@example.com", "pw")
        await self.auth.sign_out()
        unsubscribe()
        await self.auth.sign_in("a@example.com", "pw")

        self.assertEqual(seen, [identity, None])
        with self.assertRaises(AuthError):
            LocalAuthProvider(self.store).require_identity()

    async def test_global_state_session(self):
        state = GlobalState(self.auth, self.users)
        user = await state.sign_up("emp@example.com", "pw", "Emp")
        self.assertFalse(state.is_staff)

        await self.users.update_role(ADMIN, user.email, UserRole.EMPLOYEE)
        await state.refresh_user()
        self.assertTrue(state.is_staff)

        await state.sign_out()
        self.assertIsNone(state.user)
        self.assertIsNone(self.auth.current_identity())

        await state.sign_in("emp@example.com", "pw")
        self.assertEqual(state.role, UserRole.EMPLOYEE)

    async def test_sign_in_without_profile_signs_out(self):
        await self.auth.sign_up("gone@example.com", "pw", "Gone")
        await self.store.delete_document(COLLECTION_USERS, "gone@example.com")
        state = GlobalState(self.auth, self.users)
        with self.assertRaises(NotFound):
            await state.sign_in("gone@example.com", "pw")
        self.assertIsNone(self.auth.current_identity())

    async def test_password_hashing_runs_in_worker_thread(self):
        with mock.patch("db.auth.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            await self.auth.sign_up("t@example.com", "pw", "T")
            await self.auth.sign_in("t@example.com", "pw")
        self.assertEqual(
            [c.args[0] for c in to_thread.call_args_list], [pwd_context.hash, pwd_context.verify]
        )

        stored = (await self.store.get_document(COLLECTION_AUTH, "t@example.com")).data
        self.assertTrue(stored["passwordHash"].startswith("$pbkdf2-sha256$"))
        self.assertTrue(pwd_context.verify("pw", stored["passwordHash"]))


class UserDirectoryTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = DocumentStore(os.path.join(self.temp_dir.name, "test.sqlite"))
        self.users = UserDirectory(self.store)

    async def asyncSetUp(self):
        for user in (ADMIN, MANAGER, EMPLOYEE, CUSTOMER):
            await self.users.save_profile(user)
        await self.users.save_profile(
            User("u-c2", "carla@example.com", "Carla", UserRole.CUSTOMER)
        )

    def tearDown(self):
        self.temp_dir.cleanup()

    async def test_prefix_search(self):
        found = await self.users.search_users("C")
        self.assertEqual([u.email for u in found], ["carla@example.com", CUSTOMER.email])
        found = await self.users.search_users("Ca", role=UserRole.CUSTOMER)
        self.assertEqual([u.email for u in found], ["carla@example.com"])
        self.assertEqual(await self.users.search_users("   "), [])
        self.assertEqual(await self.users.search_users("zzz"), [])

    async def test_list_users_by_role(self):
        everyone = await self.users.list_users()
        self.assertEqual(
            [u.name for u in everyone], ["Admin", "Carla", "Customer", "Employee", "Manager"]
        )
        customers = await self.users.list_users(UserRole.CUSTOMER)
        self.assertEqual([u.email for u in customers], ["carla@example.com", CUSTOMER.email])

    async def test_lookup_by_uid(self):
        self.assertEqual(await self.users.get_user_by_uid("u-am"), MANAGER)
        self.assertIsNone(await self.users.get_user_by_uid("missing"))
        with self.assertRaises(NotFound):
            await self.users.require_user("missing@example.com")

    async def test_role_changes_need_admin(self):
        with self.assertRaises(PermissionDenied):
            await self.users.update_role(MANAGER, CUSTOMER.email, UserRole.ADMIN)
        updated = await self.users.update_role(ADMIN, CUSTOMER.email, UserRole.SUSPENDED)
        self.assertEqual(updated.role, UserRole.SUSPENDED)
        self.assertEqual((await self.users.get_user(CUSTOMER.email)).role, UserRole.SUSPENDED)

    async def test_create_and_delete_user(self):
        with self.assertRaises(PermissionDenied):
            await self.users.create_user(MANAGER, "x@example.com", "X")
        created = await self.users.create_user(ADMIN, "X@example.com", " X ", UserRole.EMPLOYEE)
        self.assertEqual((created.email, created.name), ("x@example.com", "X"))
        with self.assertRaises(ValidationError):
            await self.users.create_user(ADMIN, "x@example.com", "X")

        await self.users.delete_user(ADMIN, "x@example.com")
        self.assertIsNone(await self.users.get_user("x@example.com"))

    async def test_assign_customers_links_both_sides(self):
        manager = await self.users.assign_customers(
            ADMIN, MANAGER.email, [CUSTOMER.email, "carla@example.com", CUSTOMER.email]
        )
        self.assertEqual(manager.customer_ids, (CUSTOMER.email, "carla@example.com"))
        for email in (CUSTOMER.email, "carla@example.com"):
            self.assertEqual((await self.users.get_user(email)).account_manager_id, MANAGER.email)

    async def test_assign_customers_is_all_or_nothing(self):
        with self.assertRaises(NotFound):
            await self.users.assign_customers(
                ADMIN, MANAGER.email, [CUSTOMER.email, "ghost@example.com"]
            )
        with self.assertRaises(ValidationError):
            await self.users.assign_customers(ADMIN, EMPLOYEE.email, [CUSTOMER.email])
        self.assertIsNone((await self.users.get_user(CUSTOMER.email)).account_manager_id)
        self.assertEqual((await self.users.get_user(MANAGER.email)).customer_ids, ())

    async def test_push_token(self):
        await self.users.save_push_token(CUSTOMER.email, "tok-1")
        self.assertEqual((await self.users.get_user(CUSTOMER.email)).push_token, "tok-1")

        await self.users.save_push_token("device-only@example.com", "tok-2")
        bare = await self.users.get_user("device-only@example.com")
        self.assertEqual(bare.push_token, "tok-2")
        self.assertEqual(bare.role, UserRole.CUSTOMER)

    async def test_update_profile(self):
        with self.assertRaises(ValidationError):
            await self.users.update_profile(CUSTOMER.email, name=" ")
        updated = await self.users.update_profile(CUSTOMER.email, name="Cust Renamed")
        self.assertEqual(updated.name, "Cust Renamed")
        self.assertEqual((await self.users.get_user(CUSTOMER.email)).name, "Cust Renamed")


if __name__ == "__main__":
    unittest.main()
