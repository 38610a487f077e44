# live local projections of remote collections, fed by change streams
"""
The coordinator owns every subscription a view depends on. Each watch is
registered under a key; watching the same key again releases the previous
subscription first, so repeated activation of a view never stacks listeners.

Reconciliation is replace-by-id: a snapshot always carries the full current
document, so applying it twice leaves the projection unchanged.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from db.chats import ChatTopic, aggregate_topics, prune_unread, unread_badge_count
from db.codec import decode_chat, decode_order
from db.database import DocumentStore, Subscription
from db.models import (
    ChangeBatch,
    Chat,
    CustomerRef,
    DocumentSnapshot,
    Filter,
    Identity,
    Order,
)
from db.orders import OrderLedger
from utils.config import COLLECTION_CHATS, COLLECTION_ORDERS
from utils.logger import get_logger

_logger = get_logger(__name__)

T = TypeVar("T")

WATCH_ORDERS = "orders"
WATCH_CUSTOMER_ORDERS = "customer-orders"
WATCH_CHATS = "chats"


class LiveProjection(Generic[T]):
    """Keyed collection of decoded entities kept in a fixed order."""

    def __init__(
        self,
        decoder: Callable[[DocumentSnapshot], Optional[T]],
        sort_key: Callable[[T], Any],
        descending: bool = True,
    ):
        self.decoder = decoder
        self.sort_key = sort_key
        self.descending = descending
        self._items: Dict[str, T] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._items

    def get(self, doc_id: str) -> Optional[T]:
        return self._items.get(doc_id)

    @property
    def items(self) -> List[T]:
        return sorted(self._items.values(), key=self.sort_key, reverse=self.descending)

    def apply_snapshot(self, snapshot: DocumentSnapshot) -> bool:
        entity = self.decoder(snapshot)
        if entity is None:
            _logger.warning(f"Dropping undecodable {snapshot.collection}/{snapshot.id}")
            return self.remove_local(snapshot.id)
        if self._items.get(snapshot.id) == entity:
            return False
        self._items[snapshot.id] = entity
        return True

    def apply(self, batch: ChangeBatch) -> bool:
        """Reconcile a change batch; returns True when anything changed."""
        changed = False
        for change in batch.changes:
            if change.kind == "removed":
                changed = self.remove_local(change.snapshot.id) or changed
            else:
                changed = self.apply_snapshot(change.snapshot) or changed
        return changed

    def remove_local(self, doc_id: str) -> bool:
        """Optimistic removal ahead of the next snapshot."""
        return self._items.pop(doc_id, None) is not None

    def clear(self) -> None:
        self._items.clear()


def _decode_chat_pruned(snapshot: DocumentSnapshot) -> Optional[Chat]:
    chat = decode_chat(snapshot)
    return prune_unread(chat) if chat is not None else None


@dataclass(frozen=True)
class ChatListView:
    chats: Tuple[Chat, ...]
    badge_count: int
    topics: Tuple[ChatTopic, ...] = field(default=())


@dataclass
class _Watch:
    key: str
    subscription: Subscription
    projection: LiveProjection
    task: Optional[asyncio.Task] = None


class SyncCoordinator:
    def __init__(self, store: DocumentStore, identity: Identity):
        self.store = store
        self.identity = identity
        self._watches: Dict[str, _Watch] = {}

    @property
    def active_keys(self) -> List[str]:
        return sorted(self._watches)

    def projection(self, key: str) -> Optional[LiveProjection]:
        watch = self._watches.get(key)
        return watch.projection if watch else None

    async def _watch(
        self,
        key: str,
        collection: str,
        filters: Sequence[Filter],
        order_by: Optional[str],
        projection: LiveProjection,
        publish: Callable[[LiveProjection], None],
    ) -> LiveProjection:
        await self.release(key)
        subscription = await self.store.subscribe(
            collection, filters, order_by=order_by, descending=True
        )
        try:
            # the initial result is applied before returning
            first = await anext(subscription)
            projection.apply(first)
            publish(projection)
        except BaseException:
            subscription.close()
            raise
        watch = _Watch(key, subscription, projection)
        watch.task = asyncio.create_task(self._consume(watch, publish))
        self._watches[key] = watch
        _logger.debug(f"Watching {key} ({collection}).")
        return projection

    async def _consume(
        self, watch: _Watch, publish: Callable[[LiveProjection], None]
    ) -> None:
        async for batch in watch.subscription:
            if not watch.projection.apply(batch):
                continue
            try:
                publish(watch.projection)
            except Exception:
                _logger.exception(f"Listener for {watch.key} failed; still watching.")

    # ---------------------------
    # Orders
    # ---------------------------

    async def watch_orders(
        self,
        on_change: Callable[[List[Order]], None],
        filters: Sequence[Filter] = (),
        key: str = WATCH_ORDERS,
    ) -> LiveProjection[Order]:
        return await self._watch(
            key,
            COLLECTION_ORDERS,
            filters,
            "createdAt",
            LiveProjection(decode_order, lambda o: (o.created_at, o.id)),
            lambda p: on_change(p.items),
        )

    async def watch_customer_orders(
        self,
        ledger: OrderLedger,
        ref: CustomerRef,
        on_change: Callable[[List[Order]], None],
    ) -> LiveProjection[Order]:
        """Follow one customer's orders under whichever key currently holds them."""
        field_name, value = await ledger.resolve_customer_key(ref, self.identity)
        _logger.info(f"Customer orders keyed by {field_name}={value}")
        return await self.watch_orders(
            on_change, [Filter(field_name, "==", value)], key=WATCH_CUSTOMER_ORDERS
        )

    # ---------------------------
    # Chats
    # ---------------------------

    def chat_list_view(self, chats: List[Chat]) -> ChatListView:
        email = self.identity.email
        return ChatListView(
            chats=tuple(chats),
            badge_count=unread_badge_count(chats, email),
            topics=tuple(aggregate_topics(chats, email)),
        )

    async def watch_chats(
        self, on_change: Callable[[ChatListView], None], key: str = WATCH_CHATS
    ) -> LiveProjection[Chat]:
        return await self._watch(
            key,
            COLLECTION_CHATS,
            [Filter("participants", "array_contains", self.identity.email)],
            "lastMessageTimestamp",
            LiveProjection(_decode_chat_pruned, lambda c: (c.last_message.timestamp, c.id)),
            lambda p: on_change(self.chat_list_view(p.items)),
        )

    # ---------------------------
    # Lifecycle
    # ---------------------------

    async def release(self, key: str) -> None:
        watch = self._watches.pop(key, None)
        if watch is None:
            return
        watch.subscription.close()
        if watch.task is not None:
            watch.task.cancel()
            try:
                await watch.task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                _logger.error(f"Watch {key} had stopped with an error: {exc}")
        _logger.debug(f"Released watch {key}.")

    async def release_all(self) -> None:
        for key in list(self._watches):
            await self.release(key)
