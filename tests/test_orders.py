import itertools
import os
import sys
import tempfile
import unittest
from decimal import Decimal
from unittest import mock

# Ensure project src/ is on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
src_path = os.path.join(ROOT, "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from db.database import DocumentStore
from db.errors import DecodeError, PermissionDenied, StoreError, ValidationError
from db.models import (
    AttachmentType,
    Brand,
    ByEmail,
    ByUid,
    Identity,
    OrderStatus,
    ProductType,
    User,
    UserRole,
)
from db.orders import (
    OrderLedger,
    compute_total,
    customer_lookup_chain,
    new_item,
    search_orders,
    summarize_orders,
)
from db.storage import FileBlobStorage
from utils.config import COLLECTION_ORDERS

BRAND = Brand("b1", "Brandy")
ADMIN = User("u-admin", "admin@example.com", "Admin", UserRole.ADMIN)
MANAGER = User("u-am", "am@example.com", "Manager", UserRole.ACCOUNT_MANAGER)
EMPLOYEE = User("u-emp", "emp@example.com", "Employee", UserRole.EMPLOYEE)
CUSTOMER = User("u-cust", "cust@example.com", "Customer", UserRole.CUSTOMER)
SUSPENDED = User("u-sus", "sus@example.com", "Suspended", UserRole.SUSPENDED)


def _items():
    return [
        new_item("Sticker", 2, "5.00", ProductType.STICKER),
        new_item("Tax", 1, "1.00", ProductType.TAX),
    ]


class TotalsTestCase(unittest.TestCase):
    def test_total_sums_every_line(self):
        self.assertEqual(compute_total(_items()), Decimal("11.00"))

    def test_total_is_order_independent(self):
        items = _items() + [
            new_item("Bag", 3, "2.35", ProductType.BAG),
            new_item("Discount", 1, "-4.10", ProductType.DISCOUNT),
        ]
        totals = {compute_total(p) for p in itertools.permutations(items)}
        self.assertEqual(totals, {Decimal("13.95")})

    def test_empty_total_is_zero(self):
        self.assertEqual(compute_total([]), Decimal("0"))

    def test_lookup_chain(self):
        me = Identity("uid-1", "me@example.com")
        self.assertEqual(
            customer_lookup_chain(ByUid("uid-1"), me),
            [("customerUid", "uid-1"), ("customerEmail", "me@example.com")],
        )
        # someone else's uid has no email fallback
        self.assertEqual(customer_lookup_chain(ByUid("uid-2"), me), [("customerUid", "uid-2")])
        self.assertEqual(
            customer_lookup_chain(ByEmail("x@example.com"), me), [("customerEmail", "x@example.com")]
        )


class OrderLedgerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = DocumentStore(os.path.join(self.temp_dir.name, "test.sqlite"))
        self.storage = FileBlobStorage(os.path.join(self.temp_dir.name, "blobs"))
        self.ledger = OrderLedger(self.store, self.storage)

    def tearDown(self):
        self.temp_dir.cleanup()

    async def _raw_orders(self):
        return {s.id: s.data for s in await self.store.query(COLLECTION_ORDERS)}

    # ---------- lifecycle ----------

    async def test_order_lifecycle(self):
        order = await self.ledger.create_order(
            CUSTOMER.email, BRAND, _items(), customer_uid=CUSTOMER.id, actor=MANAGER
        )
        self.assertEqual(order.total_amount, Decimal("11.00"))
        self.assertEqual(order.status, OrderStatus.PENDING)

        await self.ledger.update_status(order, OrderStatus.COMPLETED, EMPLOYEE)
        fetched = await self.ledger.get_order(order.id)
        self.assertEqual(fetched.status, OrderStatus.COMPLETED)
        self.assertEqual(fetched.items, order.items)
        self.assertEqual(fetched.total_amount, Decimal("11.00"))

    async def test_create_rejects_bad_items(self):
        with self.assertRaises(ValidationError):
            await self.ledger.create_order(CUSTOMER.email, BRAND, [])
        with self.assertRaises(ValidationError):
            await self.ledger.create_order(CUSTOMER.email, BRAND, [new_item("Sticker", 0, 1)])
        with self.assertRaises(ValidationError):
            await self.ledger.create_order(CUSTOMER.email, BRAND, [new_item("Sticker", 1, -1)])
        with self.assertRaises(ValidationError):
            await self.ledger.create_order("", BRAND, _items())
        with self.assertRaises(PermissionDenied):
            await self.ledger.create_order(CUSTOMER.email, BRAND, _items(), actor=SUSPENDED)
        self.assertEqual(await self._raw_orders(), {})

    async def test_discount_lines_reduce_total(self):
        items = _items() + [new_item("Discount", 1, "-2.50", ProductType.DISCOUNT)]
        order = await self.ledger.create_order(CUSTOMER.email, BRAND, items)
        self.assertEqual(order.total_amount, Decimal("8.50"))

    async def test_edit_items_recomputes_total(self):
        order = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        edited = await self.ledger.edit_items(
            order, [new_item("Sticker", 10, "0.75")], EMPLOYEE
        )
        self.assertEqual(edited.total_amount, Decimal("7.50"))
        fetched = await self.ledger.get_order(order.id)
        self.assertEqual(fetched.total_amount, Decimal("7.50"))
        self.assertEqual([i.name for i in fetched.items], ["Sticker"])

    async def test_edit_order_in_one_write(self):
        order = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        await self.ledger.edit_order(order, OrderStatus.FLAGGED, _items()[:1], MANAGER)
        fetched = await self.ledger.get_order(order.id)
        self.assertEqual(fetched.status, OrderStatus.FLAGGED)
        self.assertEqual(fetched.total_amount, Decimal("10.00"))

    async def test_non_finite_prices_are_rejected(self):
        order = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        for price in ("NaN", "Infinity", "-Infinity"):
            with self.assertRaises(ValidationError):
                await self.ledger.create_order(CUSTOMER.email, BRAND, [new_item("Sticker", 1, price)])
            with self.assertRaises(ValidationError):
                await self.ledger.edit_items(order, [new_item("Sticker", 1, price)], EMPLOYEE)
        self.assertEqual(list(await self._raw_orders()), [order.id])
        self.assertEqual((await self.ledger.get_order(order.id)).total_amount, Decimal("11.00"))

    async def test_amounts_are_stored_exactly(self):
        price = "12345678901234567890.01"
        order = await self.ledger.create_order(CUSTOMER.email, BRAND, [new_item("Sticker", 1, price)])
        raw = (await self._raw_orders())[order.id]
        self.assertEqual(raw["totalAmount"], price)
        self.assertEqual(raw["items"][0]["price"], price)
        self.assertEqual((await self.ledger.get_order(order.id)).total_amount, Decimal(price))

        await self.ledger.edit_items(order, [new_item("Sticker", 3, price)], EMPLOYEE)
        raw = (await self._raw_orders())[order.id]
        self.assertEqual(raw["totalAmount"], "37037036703703703670.03")
        fetched = await self.ledger.get_order(order.id)
        self.assertEqual(fetched.total_amount, Decimal("37037036703703703670.03"))

    async def test_unreadable_order_raises_decode_error(self):
        order = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        with mock.patch("db.orders.decode_order", return_value=None):
            with self.assertRaises(DecodeError):
                await self.ledger.get_order(order.id)
            with self.assertRaises(DecodeError):
                await self.ledger.remove_attachment(order, "a1", EMPLOYEE)

    async def test_attachments(self):
        order = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        updated = await self.ledger.add_attachment(
            order, b"%PDF-1.4", "proof", AttachmentType.PDF, EMPLOYEE
        )
        self.assertEqual(len(updated.attachments), 1)
        attachment = updated.attachments[0]
        self.assertTrue(attachment.url.startswith("file://"))
        self.assertTrue(attachment.url.endswith(".pdf"))

        fetched = await self.ledger.get_order(order.id)
        self.assertEqual(fetched.attachments, updated.attachments)

        cleared = await self.ledger.remove_attachment(order, attachment.id, EMPLOYEE)
        self.assertEqual(cleared.attachments, ())

    # ---------- permissions ----------

    async def test_customer_cannot_delete_or_edit(self):
        order = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        before = await self._raw_orders()

        with self.assertRaises(PermissionDenied):
            await self.ledger.delete_order(order, CUSTOMER)
        with self.assertRaises(PermissionDenied):
            await self.ledger.update_status(order, OrderStatus.COMPLETED, CUSTOMER)
        with self.assertRaises(PermissionDenied):
            await self.ledger.delete_order(order, EMPLOYEE)

        self.assertEqual(await self._raw_orders(), before)

    async def test_manager_deletes(self):
        order = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        await self.ledger.delete_order(order, ADMIN)
        self.assertEqual(await self._raw_orders(), {})

    # ---------- customer lookups ----------

    async def test_uid_lookup_falls_back_to_email(self):
        me = Identity("uid-legacy", "legacy@example.com")
        for _ in range(3):
            await self.ledger.create_order(me.email, BRAND, _items())
        await self.ledger.create_order("other@example.com", BRAND, _items())

        orders = await self.ledger.fetch_orders_for_customer(ByUid(me.uid), me)
        self.assertEqual(len(orders), 3)
        self.assertTrue(all(o.customer_email == me.email for o in orders))
        self.assertEqual(
            await self.ledger.resolve_customer_key(ByUid(me.uid), me),
            ("customerEmail", me.email),
        )

    async def test_uid_lookup_prefers_uid_when_present(self):
        me = Identity("uid-new", "new@example.com")
        await self.ledger.create_order(me.email, BRAND, _items(), customer_uid=me.uid)
        await self.ledger.create_order(me.email, BRAND, _items())

        orders = await self.ledger.fetch_orders_for_customer(ByUid(me.uid), me)
        self.assertEqual(len(orders), 1)
        self.assertEqual(
            await self.ledger.resolve_customer_key(ByUid(me.uid), me), ("customerUid", me.uid)
        )

    async def test_store_error_on_first_lookup_falls_back(self):
        me = Identity("uid-x", "x@example.com")
        await self.ledger.create_order(me.email, BRAND, _items())
        real = self.ledger._fetch_by

        async def flaky(field, value):
            if field == "customerUid":
                raise StoreError("index missing")
            return await real(field, value)

        with mock.patch.object(self.ledger, "_fetch_by", side_effect=flaky):
            orders = await self.ledger.fetch_orders_for_customer(ByUid(me.uid), me)
        self.assertEqual(len(orders), 1)

    async def test_store_error_on_last_lookup_surfaces(self):
        with mock.patch.object(self.ledger, "_fetch_by", side_effect=StoreError("down")):
            with self.assertRaises(StoreError):
                await self.ledger.fetch_orders_for_customer(ByEmail("a@example.com"))

    async def test_orders_newest_first(self):
        first = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        second = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        orders = await self.ledger.fetch_all_orders()
        self.assertEqual([o.id for o in orders], [second.id, first.id])


class SummaryTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.ledger = OrderLedger(DocumentStore(os.path.join(self.temp_dir.name, "t.sqlite")))

    def tearDown(self):
        self.temp_dir.cleanup()

    async def test_summary_and_search(self):
        a = await self.ledger.create_order(CUSTOMER.email, BRAND, _items())
        b = await self.ledger.create_order(
            CUSTOMER.email, Brand("b2", "Other"), [new_item("Bag", 1, 3, ProductType.BAG)]
        )
        a = await self.ledger.update_status(a, OrderStatus.COMPLETED, EMPLOYEE)
        b = await self.ledger.update_status(b, OrderStatus.IN_PROGRESS, EMPLOYEE)

        summary = summarize_orders([a, b])
        self.assertEqual(summary.total_spent, Decimal("14.00"))
        self.assertEqual(summary.completed_count, 1)
        self.assertEqual(summary.in_progress_count, 1)
        self.assertEqual(dict(summary.top_items), {"Bag": 1, "Sticker": 1})

        self.assertEqual(search_orders([a, b], "other"), [b])
        self.assertEqual(search_orders([a, b], "STICK"), [a])
        self.assertEqual(search_orders([a, b], "  "), [a, b])


if __name__ == "__main__":
    unittest.main()
