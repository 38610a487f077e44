import asyncio
import os
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from unittest import mock

# Ensure project src/ is on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
src_path = os.path.join(ROOT, "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from db.codec import decode_order, encode_chat
from db.database import DocumentStore
from db.errors import StoreError
from db.models import (
    Brand,
    ByUid,
    ChangeBatch,
    Chat,
    ChatMessage,
    ChatType,
    DocumentChange,
    DocumentSnapshot,
    Identity,
    OrderStatus,
    User,
    UserRole,
)
from db.orders import OrderLedger, new_item
from db.sync import WATCH_CHATS, WATCH_ORDERS, LiveProjection, SyncCoordinator
from utils.config import COLLECTION_CHATS

BRAND = Brand("b1", "Brandy")
EMPLOYEE = User("u-emp", "emp@example.com", "Employee", UserRole.EMPLOYEE)
T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _order_snapshot(order_id: str, status: str) -> DocumentSnapshot:
    return DocumentSnapshot(
        "orders",
        order_id,
        {
            "customerEmail": "c@example.com",
            "brandName": "Brandy",
            "items": [{"id": "i", "name": "Sticker", "quantity": 1, "price": 2.0}],
            "status": status,
            "createdAt": T0,
            "totalAmount": 2.0,
        },
    )


class LiveProjectionTestCase(unittest.TestCase):
    def setUp(self):
        self.projection = LiveProjection(decode_order, lambda o: (o.created_at, o.id))

    def test_applying_same_snapshot_twice_is_a_no_op(self):
        batch = ChangeBatch((DocumentChange("added", _order_snapshot("o1", "pending")),), ())
        self.assertTrue(self.projection.apply(batch))
        once = list(self.projection.items)
        self.assertFalse(self.projection.apply(batch))
        self.assertEqual(self.projection.items, once)

    def test_replace_by_id_and_remove(self):
        self.projection.apply_snapshot(_order_snapshot("o1", "pending"))
        self.projection.apply_snapshot(_order_snapshot("o1", "completed"))
        self.assertEqual(len(self.projection), 1)
        self.assertEqual(self.projection.get("o1").status, OrderStatus.COMPLETED)

        removal = ChangeBatch((DocumentChange("removed", _order_snapshot("o1", "completed")),), ())
        self.assertTrue(self.projection.apply(removal))
        self.assertFalse(self.projection.apply(removal))
        self.assertNotIn("o1", self.projection)

    def test_optimistic_removal(self):
        self.projection.apply_snapshot(_order_snapshot("o1", "pending"))
        self.assertTrue(self.projection.remove_local("o1"))
        self.assertFalse(self.projection.remove_local("o1"))


class SyncCoordinatorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = DocumentStore(os.path.join(self.temp_dir.name, "test.sqlite"))
        self.ledger = OrderLedger(self.store)
        self.identity = Identity("uid-me", "me@example.com")
        self.sync = SyncCoordinator(self.store, self.identity)

    async def asyncTearDown(self):
        await self.sync.release_all()

    def tearDown(self):
        self.temp_dir.cleanup()

    async def test_watch_orders_follows_changes(self):
        updates = asyncio.Queue()
        existing = await self.ledger.create_order("a@example.com", BRAND, [new_item("Sticker", 1, 2)])
        await self.sync.watch_orders(updates.put_nowait)
        self.assertEqual([o.id for o in updates.get_nowait()], [existing.id])

        created = await self.ledger.create_order("b@example.com", BRAND, [new_item("Bag", 1, 3)])
        orders = await asyncio.wait_for(updates.get(), 1)
        self.assertEqual([o.id for o in orders], [created.id, existing.id])

        await self.ledger.update_status(created, OrderStatus.FLAGGED, EMPLOYEE)
        orders = await asyncio.wait_for(updates.get(), 1)
        self.assertEqual(orders[0].status, OrderStatus.FLAGGED)

        await self.store.delete_document("orders", existing.id)
        orders = await asyncio.wait_for(updates.get(), 1)
        self.assertEqual([o.id for o in orders], [created.id])

    async def test_customer_watch_uses_email_fallback(self):
        updates = asyncio.Queue()
        mine = await self.ledger.create_order(self.identity.email, BRAND, [new_item("Sticker", 1, 2)])
        await self.ledger.create_order("other@example.com", BRAND, [new_item("Sticker", 1, 2)])

        await self.sync.watch_customer_orders(self.ledger, ByUid(self.identity.uid), updates.put_nowait)
        self.assertEqual([o.id for o in updates.get_nowait()], [mine.id])

    async def test_rewatching_releases_previous_subscription(self):
        for _ in range(3):
            await self.sync.watch_orders(lambda orders: None)
        self.assertEqual(self.store.subscription_count, 1)
        self.assertEqual(self.sync.active_keys, [WATCH_ORDERS])

        await self.sync.release(WATCH_ORDERS)
        await self.sync.release(WATCH_ORDERS)
        self.assertEqual(self.store.subscription_count, 0)
        self.assertEqual(self.sync.active_keys, [])

    async def test_watch_chats_recomputes_badge_and_drops_stale_keys(self):
        updates = asyncio.Queue()
        me, x = self.identity.email, "x@example.com"
        chat = Chat(
            id="c1",
            participants=(me, x),
            last_message=ChatMessage("m1", x, "hi", None, None, T0),
            type=ChatType.CUSTOMER,
            unread_status={me: True, x: False, "left@example.com": True},
        )
        await self.store.set_document(COLLECTION_CHATS, chat.id, encode_chat(chat))
        await self.store.set_document(
            COLLECTION_CHATS,
            "not-mine",
            encode_chat(Chat("not-mine", (x, "y@example.com"), chat.last_message, ChatType.TEAM, {})),
        )

        await self.sync.watch_chats(updates.put_nowait)
        view = updates.get_nowait()
        self.assertEqual([c.id for c in view.chats], ["c1"])
        self.assertEqual(view.badge_count, 1)
        self.assertEqual(view.chats[0].unread_status, {me: True, x: False})
        self.assertEqual([t.counterpart for t in view.topics], [x])

        await self.store.update_fields(COLLECTION_CHATS, "c1", {"unreadStatus": {me: False, x: False}})
        view = await asyncio.wait_for(updates.get(), 1)
        self.assertEqual(view.badge_count, 0)
        self.assertFalse(view.topics[0].has_unread)

        # a write that only touches a stale key changes nothing locally
        await self.store.update_fields(
            COLLECTION_CHATS, "c1", {"unreadStatus": {me: False, x: False, "left@example.com": False}}
        )
        await asyncio.sleep(0.05)
        self.assertTrue(updates.empty())

        await self.sync.release(WATCH_CHATS)
        self.assertEqual(self.store.subscription_count, 0)

    async def test_failed_initial_read_leaves_no_subscription(self):
        with mock.patch.object(self.store, "query", side_effect=StoreError("backend down")):
            with self.assertRaises(StoreError):
                await self.sync.watch_chats(lambda view: None)
        self.assertEqual(self.store.subscription_count, 0)
        self.assertEqual(self.sync.active_keys, [])

        await self.sync.release_all()
        self.assertEqual(self.store.subscription_count, 0)

    async def test_failing_first_publish_releases_subscription(self):
        def on_change(orders):
            raise RuntimeError("listener broke")

        with self.assertRaises(RuntimeError):
            await self.sync.watch_orders(on_change)
        self.assertEqual(self.store.subscription_count, 0)
        self.assertEqual(self.sync.active_keys, [])

    async def test_listener_error_does_not_stop_the_watch(self):
        updates = asyncio.Queue()
        calls = []

        def on_change(orders):
            calls.append(len(orders))
            if len(calls) == 2:
                raise RuntimeError("listener broke")
            updates.put_nowait(orders)

        await self.sync.watch_orders(on_change)
        self.assertEqual(updates.get_nowait(), [])

        await self.ledger.create_order("a@example.com", BRAND, [new_item("Sticker", 1, 2)])
        await asyncio.sleep(0.05)
        self.assertEqual(len(calls), 2)
        self.assertTrue(updates.empty())

        await self.ledger.create_order("b@example.com", BRAND, [new_item("Bag", 1, 3)])
        orders = await asyncio.wait_for(updates.get(), 1)
        self.assertEqual(len(orders), 2)

        await self.sync.release(WATCH_ORDERS)
        self.assertEqual(self.store.subscription_count, 0)


if __name__ == "__main__":
    unittest.main()
