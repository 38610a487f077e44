# order ledger: creation, item/attachment edits, status changes, totals
from __future__ import annotations

import dataclasses
import uuid
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from db.codec import (
    decode_all,
    decode_order,
    encode_attachment,
    encode_money,
    encode_order,
    encode_order_item,
    utcnow,
)
from db.database import DocumentStore
from db.errors import DecodeError, NotFound, StoreError, ValidationError
from db.models import (
    AttachmentType,
    Brand,
    ByEmail,
    CustomerRef,
    Filter,
    Identity,
    Order,
    OrderAttachment,
    OrderItem,
    OrderStatus,
    ProductType,
    User,
    UserRole,
)
from db.storage import FileBlobStorage
from utils.config import COLLECTION_ORDERS
from utils.logger import get_logger
from utils.permissions import can_edit_orders, can_manage_orders, require

_logger = get_logger(__name__)

ATTACHMENT_CONTENT_TYPES = {
    AttachmentType.IMAGE: ("jpg", "image/jpeg"),
    AttachmentType.PDF: ("pdf", "application/pdf"),
    AttachmentType.VIDEO: ("mp4", "video/mp4"),
}


def compute_total(items: Iterable[OrderItem]) -> Decimal:
    """
    Sum of price * quantity over every item. Tax and discount lines are
    ordinary line items; discounts carry a negative price.
    """
    return sum((item.price * item.quantity for item in items), Decimal("0"))


def validate_items(items: Sequence[OrderItem]) -> None:
    if not items:
        raise ValidationError("An order needs at least one item.")
    for item in items:
        if not item.name.strip():
            raise ValidationError("Every item needs a name.")
        if item.quantity < 1:
            raise ValidationError(f"Quantity of {item.name!r} must be at least 1.")
        if not item.price.is_finite():
            raise ValidationError(f"Price of {item.name!r} must be a finite amount.")
        if item.price < 0 and item.product_type != ProductType.DISCOUNT:
            raise ValidationError(f"Only discount items may have a negative price ({item.name!r}).")


def new_item(
    name: str,
    quantity: int,
    price,
    product_type: ProductType = ProductType.STICKER,
) -> OrderItem:
    return OrderItem(
        id=uuid.uuid4().hex,
        name=name,
        quantity=quantity,
        price=Decimal(str(price)),
        product_type=product_type,
    )


def customer_lookup_chain(
    ref: CustomerRef, identity: Optional[Identity] = None
) -> List[Tuple[str, str]]:
    """
    Ordered (field, value) lookups for a customer reference. A uid that
    belongs to the signed-in identity falls back to that identity's email,
    since older orders were keyed by email only.
    """
    if isinstance(ref, ByEmail):
        return [("customerEmail", ref.email)]
    chain = [("customerUid", ref.uid)]
    if identity is not None and identity.uid == ref.uid and identity.email:
        chain.append(("customerEmail", identity.email))
    return chain


@dataclass(frozen=True)
class OrderSummary:
    total_spent: Decimal
    completed_count: int
    in_progress_count: int
    top_items: Tuple[Tuple[str, int], ...]


def summarize_orders(orders: Iterable[Order], top_n: int = 3) -> OrderSummary:
    """Spending and status counts for a customer's orders, plus their most ordered items."""
    total = Decimal("0")
    completed = 0
    in_progress = 0
    counts: Counter = Counter()
    for order in orders:
        total += order.total_amount
        if order.status == OrderStatus.COMPLETED:
            completed += 1
        elif order.status == OrderStatus.IN_PROGRESS:
            in_progress += 1
        for item in order.items:
            if item.product_type in (ProductType.TAX, ProductType.DISCOUNT):
                continue
            if item.name.lower() in ("tax", "discount"):
                continue
            counts[item.name] += 1
    top = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:top_n]
    return OrderSummary(total, completed, in_progress, tuple(top))


def search_orders(orders: Iterable[Order], text: str) -> List[Order]:
    """Case-insensitive match on id, brand, customer email and item names."""
    needle = (text or "").strip().lower()
    if not needle:
        return list(orders)
    result = []
    for order in orders:
        haystack = [order.id, order.brand_name, order.customer_email]
        haystack.extend(item.name for item in order.items)
        if any(needle in h.lower() for h in haystack if h):
            result.append(order)
    return result


class OrderLedger:
    def __init__(self, store: DocumentStore, storage: Optional[FileBlobStorage] = None):
        self.store = store
        self.storage = storage

    # ---------------------------
    # Reads
    # ---------------------------

    async def get_order(self, order_id: str) -> Order:
        snap = await self.store.get_document(COLLECTION_ORDERS, order_id)
        if snap is None:
            raise NotFound(f"Order {order_id} not found")
        order = decode_order(snap)
        if order is None:
            raise DecodeError(f"Order {order_id} could not be read")
        return order

    async def fetch_all_orders(self) -> List[Order]:
        snaps = await self.store.query(
            COLLECTION_ORDERS, order_by="createdAt", descending=True
        )
        return decode_all(snaps, decode_order)

    async def _fetch_by(self, field: str, value: str) -> List[Order]:
        snaps = await self.store.query(
            COLLECTION_ORDERS,
            [Filter(field, "==", value)],
            order_by="createdAt",
            descending=True,
        )
        return decode_all(snaps, decode_order)

    async def resolve_customer_key(
        self, ref: CustomerRef, identity: Optional[Identity] = None
    ) -> Tuple[str, str]:
        """First lookup of the chain that yields orders; the last one when none do."""
        chain = customer_lookup_chain(ref, identity)
        for field, value in chain[:-1]:
            try:
                if await self._fetch_by(field, value):
                    return field, value
            except StoreError as exc:
                _logger.info(f"Lookup by {field} failed ({exc}); trying next key.")
        return chain[-1]

    async def fetch_orders_for_customer(
        self, ref: CustomerRef, identity: Optional[Identity] = None
    ) -> List[Order]:
        """
        Orders for a customer, newest first. Each step of the lookup chain is
        tried in turn; an empty result or a store failure moves on to the
        next key, and only a failure of the last step reaches the caller.
        """
        chain = customer_lookup_chain(ref, identity)
        for position, (field, value) in enumerate(chain):
            last = position == len(chain) - 1
            try:
                orders = await self._fetch_by(field, value)
            except StoreError as exc:
                if last:
                    raise
                _logger.info(f"Order lookup by {field} failed ({exc}); falling back.")
                continue
            if orders or last:
                return orders
            _logger.info(f"No orders keyed by {field}={value}; falling back.")
        return []

    # ---------------------------
    # Writes
    # ---------------------------

    async def create_order(
        self,
        customer_email: str,
        brand: Brand,
        items: Sequence[OrderItem],
        attachments: Sequence[OrderAttachment] = (),
        *,
        customer_uid: Optional[str] = None,
        account_manager_email: str = "",
        actor: Optional[User] = None,
    ) -> Order:
        if actor is not None:
            require(actor.role != UserRole.SUSPENDED, "create orders", actor)
        customer_email = (customer_email or "").strip()
        if not customer_email and not customer_uid:
            raise ValidationError("An order needs a customer.")
        validate_items(items)

        order = Order(
            id=uuid.uuid4().hex,
            customer_email=customer_email,
            customer_uid=customer_uid or None,
            account_manager_email=account_manager_email,
            brand_id=brand.id,
            brand_name=brand.name,
            items=tuple(items),
            status=OrderStatus.PENDING,
            created_at=utcnow(),
            total_amount=compute_total(items),
            attachments=tuple(attachments),
        )
        await self.store.set_document(COLLECTION_ORDERS, order.id, encode_order(order))
        _logger.info(f"Created order {order.id} for {customer_email or customer_uid}")
        return order

    async def update_status(self, order: Order, new_status: OrderStatus, actor: User) -> Order:
        require(can_edit_orders(actor), "change order status", actor)
        await self.store.update_fields(
            COLLECTION_ORDERS, order.id, {"status": new_status.value}
        )
        _logger.info(f"Order {order.id}: {order.status.value} -> {new_status.value}")
        return dataclasses.replace(order, status=new_status)

    async def edit_items(self, order: Order, new_items: Sequence[OrderItem], actor: User) -> Order:
        require(can_edit_orders(actor), "edit order items", actor)
        validate_items(new_items)
        total = compute_total(new_items)
        await self.store.update_fields(
            COLLECTION_ORDERS,
            order.id,
            {
                "items": [encode_order_item(i) for i in new_items],
                "totalAmount": encode_money(total),
            },
        )
        return dataclasses.replace(order, items=tuple(new_items), total_amount=total)

    async def edit_order(
        self,
        order: Order,
        status: OrderStatus,
        items: Sequence[OrderItem],
        actor: User,
    ) -> Order:
        """Status, items and total in a single write."""
        require(can_edit_orders(actor), "edit orders", actor)
        validate_items(items)
        total = compute_total(items)
        await self.store.update_fields(
            COLLECTION_ORDERS,
            order.id,
            {
                "status": status.value,
                "items": [encode_order_item(i) for i in items],
                "totalAmount": encode_money(total),
            },
        )
        return dataclasses.replace(order, status=status, items=tuple(items), total_amount=total)

    async def add_attachment(
        self,
        order: Order,
        data: bytes,
        name: str,
        attachment_type: AttachmentType,
        actor: User,
    ) -> Order:
        require(can_edit_orders(actor), "attach files to orders", actor)
        if self.storage is None:
            raise StoreError("No blob storage configured.")
        ext, content_type = ATTACHMENT_CONTENT_TYPES[attachment_type]
        attachment_id = uuid.uuid4().hex
        url = await self.storage.upload(
            f"orderAttachments/{order.id}/{attachment_id}.{ext}", data, content_type
        )
        attachment = OrderAttachment(
            id=attachment_id, url=url, type=attachment_type, name=name or attachment_id
        )
        async with self.store.transaction() as txn:
            snap = await txn.get(COLLECTION_ORDERS, order.id)
            if snap is None:
                raise NotFound(f"Order {order.id} not found")
            current = decode_order(snap)
            if current is None:
                raise DecodeError(f"Order {order.id} could not be read")
            attachments = [*current.attachments, attachment]
            await txn.update(
                COLLECTION_ORDERS,
                order.id,
                {"attachments": [encode_attachment(a) for a in attachments]},
            )
        return dataclasses.replace(current, attachments=tuple(attachments))

    async def remove_attachment(self, order: Order, attachment_id: str, actor: User) -> Order:
        require(can_edit_orders(actor), "remove order attachments", actor)
        async with self.store.transaction() as txn:
            snap = await txn.get(COLLECTION_ORDERS, order.id)
            if snap is None:
                raise NotFound(f"Order {order.id} not found")
            current = decode_order(snap)
            if current is None:
                raise DecodeError(f"Order {order.id} could not be read")
            attachments = [a for a in current.attachments if a.id != attachment_id]
            if len(attachments) == len(current.attachments):
                raise NotFound(f"Attachment {attachment_id} not on order {order.id}")
            await txn.update(
                COLLECTION_ORDERS,
                order.id,
                {"attachments": [encode_attachment(a) for a in attachments]},
            )
        return dataclasses.replace(current, attachments=tuple(attachments))

    async def delete_order(self, order: Order, actor: User) -> None:
        require(can_manage_orders(actor), "delete orders", actor)
        await self.store.delete_document(COLLECTION_ORDERS, order.id)
        _logger.info(f"{actor.email} deleted order {order.id}")
