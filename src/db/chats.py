# conversation registry: chats, membership, messages and unread tracking
"""
Every chat keeps a per-participant unread map next to a denormalized copy of
its latest message. A participant's flag goes True when someone else posts
and back to False only when that participant reads the chat.

Sending writes the message into the chat's sub-log and refreshes the chat
summary (lastMessage + unread map) inside one store transaction, so the
summary never points at a message other than the newest one.
"""
from __future__ import annotations

import asyncio
import dataclasses
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from db.codec import (
    decode_all,
    decode_chat,
    decode_message,
    encode_chat,
    encode_message,
    utcnow,
)
from db.database import DocumentStore, Subscription
from db.errors import DecodeError, NotFound, PermissionDenied, StoreError, ValidationError
from db.models import (
    Chat,
    ChatMessage,
    ChatType,
    DocumentSnapshot,
    Filter,
    MediaType,
    User,
    UserRole,
)
from db.storage import FileBlobStorage
from db.users import UserDirectory
from utils.config import (
    COLLECTION_CHATS,
    MESSAGE_PAGE_SIZE,
    NAME_CACHE_SECONDS,
    messages_collection,
)
from utils.logger import get_logger
from utils.permissions import can_delete_chats, can_message, require

_logger = get_logger(__name__)

CHAT_CREATED_TEXT = "Chat created"

# media type -> (storage folder, file extension, content type, preview text)
MEDIA_UPLOADS = {
    MediaType.IMAGE: ("chatImages", "jpg", "image/jpeg", "Image"),
    MediaType.VIDEO: ("chatVideos", "mp4", "video/mp4", "Video"),
    MediaType.PDF: ("chatPDFs", "pdf", "application/pdf", "PDF"),
}


def has_unread(chat: Chat, participant: str) -> bool:
    return chat.unread_status.get(participant, False)


def unread_after_send(participants: Iterable[str], sender: str) -> Dict[str, bool]:
    return {p: p != sender for p in participants}


def prune_unread(chat: Chat) -> Chat:
    """Drop unread flags of identifiers that are no longer participants."""
    members = set(chat.participants)
    if all(key in members for key in chat.unread_status):
        return chat
    kept = {k: v for k, v in chat.unread_status.items() if k in members}
    return dataclasses.replace(chat, unread_status=kept)


def counterpart_of(chat: Chat, identity: str) -> Optional[str]:
    """The first participant other than identity; multi-party chats group under it."""
    return next((p for p in chat.participants if p != identity), None)


def message_preview(message: ChatMessage) -> str:
    if message.text:
        return message.text
    if message.media_type in MEDIA_UPLOADS:
        return MEDIA_UPLOADS[message.media_type][3]
    return ""


@dataclass(frozen=True)
class ChatTopic:
    counterpart: str
    has_unread: bool
    last_activity: datetime
    chat_ids: Tuple[str, ...]
    user: Optional[User] = None


def aggregate_topics(chats: Iterable[Chat], identity: str) -> List[ChatTopic]:
    """
    Group chats by counterpart: unread if any chat in the group is unread for
    identity, last activity is the newest lastMessage. Newest group first.
    """
    groups: Dict[str, Dict] = {}
    for chat in chats:
        if identity not in chat.participants:
            continue
        other = counterpart_of(chat, identity)
        if other is None:
            _logger.debug(f"Chat {chat.id} has no other participant; skipped.")
            continue
        group = groups.setdefault(
            other, {"unread": False, "last": chat.last_message.timestamp, "ids": []}
        )
        group["unread"] = group["unread"] or has_unread(chat, identity)
        group["last"] = max(group["last"], chat.last_message.timestamp)
        group["ids"].append(chat.id)

    topics = [
        ChatTopic(other, g["unread"], g["last"], tuple(g["ids"]))
        for other, g in groups.items()
    ]
    topics.sort(key=lambda t: t.last_activity, reverse=True)
    return topics


def unread_badge_count(chats: Iterable[Chat], identity: str) -> int:
    return sum(1 for chat in chats if has_unread(chat, identity))


@dataclass(frozen=True)
class MessagePage:
    messages: Tuple[ChatMessage, ...]  # newest first
    cursor: Optional[DocumentSnapshot]  # last document of the page
    has_more: bool


class ChatRegistry:
    def __init__(
        self,
        store: DocumentStore,
        users: UserDirectory,
        notifications=None,
        storage: Optional[FileBlobStorage] = None,
        page_size: int = MESSAGE_PAGE_SIZE,
        name_ttl: float = NAME_CACHE_SECONDS,
    ):
        self.store = store
        self.users = users
        self.notifications = notifications
        self.storage = storage
        self.page_size = page_size
        self.name_ttl = name_ttl
        # id -> (fetched at, display name)
        self._names: Dict[str, Tuple[float, str]] = {}

    # ---------------------------
    # Reads
    # ---------------------------

    async def get_chat(self, chat_id: str) -> Chat:
        snap = await self.store.get_document(COLLECTION_CHATS, chat_id)
        if snap is None:
            raise NotFound(f"Chat {chat_id} not found")
        chat = decode_chat(snap)
        if chat is None:
            raise DecodeError(f"Chat {chat_id} could not be read")
        return chat

    async def fetch_chats_for(self, participant: str) -> List[Chat]:
        snaps = await self.store.query(
            COLLECTION_CHATS,
            [Filter("participants", "array_contains", participant)],
            order_by="lastMessageTimestamp",
            descending=True,
        )
        return decode_all(snaps, decode_chat)

    async def fetch_message_page(
        self, chat_id: str, cursor: Optional[DocumentSnapshot] = None
    ) -> MessagePage:
        snaps = await self.store.query(
            messages_collection(chat_id),
            order_by="timestamp",
            descending=True,
            limit=self.page_size,
            start_after=cursor,
        )
        messages = decode_all(snaps, decode_message)
        return MessagePage(
            messages=tuple(messages),
            cursor=snaps[-1] if snaps else cursor,
            has_more=len(snaps) == self.page_size,
        )

    def open_feed(
        self,
        chat_id: str,
        viewer: str,
        on_change: Optional[Callable[[List[ChatMessage]], None]] = None,
    ) -> "MessageFeed":
        return MessageFeed(self, chat_id, viewer, on_change)

    # ---------------------------
    # Chat lifecycle
    # ---------------------------

    async def create_chat(
        self,
        creator: User,
        participants: Sequence[str],
        title: str = "",
        chat_type: ChatType = ChatType.TEAM,
    ) -> Chat:
        """
        Create a chat with the creator auto-added. Everyone but the creator
        starts with unread set. Team chats only admit participants the
        creator's role may message.
        """
        require(creator.role != UserRole.SUSPENDED, "create chats", creator)
        members = list(dict.fromkeys(p.strip() for p in participants if p and p.strip()))
        if creator.email not in members:
            members.append(creator.email)
        if len(members) < 2:
            raise ValidationError("A chat needs at least one other participant.")

        if chat_type == ChatType.TEAM:
            others = [p for p in members if p != creator.email]
            profiles = await asyncio.gather(*(self.users.get_user(p) for p in others))
            for email, profile in zip(others, profiles):
                if profile is None:
                    raise NotFound(f"No user profile for {email}")
                require(
                    can_message(creator, profile.role),
                    f"message a {profile.role.value}",
                    creator,
                )

        now = utcnow()
        chat = Chat(
            id=uuid.uuid4().hex,
            participants=tuple(members),
            last_message=ChatMessage(
                id=uuid.uuid4().hex,
                sender_id=creator.email,
                text=CHAT_CREATED_TEXT,
                media_url=None,
                media_type=None,
                timestamp=now,
            ),
            type=chat_type,
            unread_status=unread_after_send(members, creator.email),
            title=title.strip() or None,
        )
        doc = encode_chat(chat)
        doc["createdAt"] = now
        await self.store.set_document(COLLECTION_CHATS, chat.id, doc)
        _logger.info(f"{creator.email} created {chat_type.value} chat {chat.id}")
        return chat

    async def delete_chat(self, chat_id: str, actor: User) -> None:
        """Removes the chat document only; its message sub-log is left to the store."""
        require(can_delete_chats(actor), "delete chats", actor)
        await self.store.delete_document(COLLECTION_CHATS, chat_id)
        _logger.info(f"{actor.email} deleted chat {chat_id}")

    async def add_participants(self, chat_id: str, new: Sequence[str], actor: User) -> Chat:
        require(actor.role != UserRole.SUSPENDED, "change chat members", actor)
        async with self.store.transaction() as txn:
            chat = await self._load(txn, chat_id)
            if actor.email not in chat.participants and actor.role != UserRole.ADMIN:
                raise PermissionDenied(f"{actor.email} is not in chat {chat_id}")
            added = [p for p in dict.fromkeys(new) if p and p not in chat.participants]
            participants = (*chat.participants, *added)
            unread = {p: chat.unread_status.get(p, False) for p in chat.participants}
            unread.update({p: True for p in added})
            await txn.update(
                COLLECTION_CHATS,
                chat_id,
                {"participants": list(participants), "unreadStatus": unread},
            )
        return dataclasses.replace(chat, participants=participants, unread_status=unread)

    async def remove_participant(self, chat_id: str, participant: str, actor: User) -> Chat:
        if actor.email != participant:
            require(can_delete_chats(actor), "remove chat members", actor)
        async with self.store.transaction() as txn:
            chat = await self._load(txn, chat_id)
            if participant not in chat.participants:
                raise ValidationError(f"{participant} is not in chat {chat_id}")
            participants = tuple(p for p in chat.participants if p != participant)
            unread = {p: chat.unread_status.get(p, False) for p in participants}
            await txn.update(
                COLLECTION_CHATS,
                chat_id,
                {"participants": list(participants), "unreadStatus": unread},
            )
        return dataclasses.replace(chat, participants=participants, unread_status=unread)

    @staticmethod
    async def _load(txn, chat_id: str) -> Chat:
        snap = await txn.get(COLLECTION_CHATS, chat_id)
        if snap is None:
            raise NotFound(f"Chat {chat_id} not found")
        chat = decode_chat(snap)
        if chat is None:
            raise DecodeError(f"Chat {chat_id} could not be read")
        return chat

    # ---------------------------
    # Messages & unread state
    # ---------------------------

    async def send_message(
        self,
        chat_id: str,
        sender: str,
        text: Optional[str] = None,
        media_url: Optional[str] = None,
        media_type: Optional[MediaType] = None,
    ) -> ChatMessage:
        has_text = bool(text and text.strip())
        has_media = bool(media_url) and media_type is not None
        if has_text == has_media:
            raise ValidationError("A message carries either text or one media file.")

        message = ChatMessage(
            id=uuid.uuid4().hex,
            sender_id=sender,
            text=text if has_text else None,
            media_url=media_url if has_media else None,
            media_type=media_type if has_media else None,
            timestamp=utcnow(),
        )
        summary = dataclasses.replace(message, text=message_preview(message))

        async with self.store.transaction() as txn:
            chat = await self._load(txn, chat_id)
            if sender not in chat.participants:
                raise PermissionDenied(f"{sender} is not in chat {chat_id}")
            await txn.set(messages_collection(chat_id), message.id, encode_message(message))
            await txn.update(
                COLLECTION_CHATS,
                chat_id,
                {
                    "lastMessage": encode_message(summary),
                    "lastMessageTimestamp": message.timestamp,
                    "unreadStatus": unread_after_send(chat.participants, sender),
                },
            )
        _logger.info(f"{sender} posted {message.id} to chat {chat_id}")

        if self.notifications is not None:
            await self._notify_participants(chat, sender, message_preview(message))
        return message

    async def _notify_participants(self, chat: Chat, sender: str, preview: str) -> None:
        try:
            await self.notifications.enqueue_message_notifications(
                chat.id, chat.participants, sender, preview
            )
        except StoreError as exc:
            _logger.error(f"Could not queue notifications for chat {chat.id}: {exc}")

    async def send_media(
        self, chat_id: str, sender: str, data: bytes, media_type: MediaType
    ) -> ChatMessage:
        """Upload the payload to blob storage, then post it as a media message."""
        if media_type not in MEDIA_UPLOADS:
            raise ValidationError(f"Unsupported media type: {media_type}")
        if not data:
            raise ValidationError(f"{media_type.value} data is empty.")
        if self.storage is None:
            raise StoreError("No blob storage configured.")
        folder, ext, content_type, _ = MEDIA_UPLOADS[media_type]
        url = await self.storage.upload(
            f"{folder}/{uuid.uuid4().hex}.{ext}", data, content_type
        )
        return await self.send_message(chat_id, sender, media_url=url, media_type=media_type)

    async def mark_read(self, chat_id: str, participant: str) -> None:
        async with self.store.transaction() as txn:
            chat = await self._load(txn, chat_id)
            if participant not in chat.participants:
                raise ValidationError(f"{participant} is not in chat {chat_id}")
            if not has_unread(chat, participant) and participant in chat.unread_status:
                return
            unread = {p: chat.unread_status.get(p, False) for p in chat.participants}
            unread[participant] = False
            await txn.update(COLLECTION_CHATS, chat_id, {"unreadStatus": unread})
        _logger.debug(f"{participant} read chat {chat_id}")

    # ---------------------------
    # Derived views
    # ---------------------------

    async def participant_names(self, ids: Sequence[str]) -> Dict[str, str]:
        """Display names for identifiers, fetched concurrently; unknown ids map to themselves."""
        now = time.monotonic()
        expired = [i for i, (at, _) in self._names.items() if now - at >= self.name_ttl]
        for ident in expired:
            del self._names[ident]
        missing = [i for i in dict.fromkeys(ids) if i not in self._names]
        if missing:
            results = await asyncio.gather(
                *(self.users.get_user(i) for i in missing), return_exceptions=True
            )
            for ident, result in zip(missing, results):
                if isinstance(result, BaseException):
                    _logger.error(f"Error fetching participant {ident}: {result}")
                    continue
                if result is not None and result.name:
                    self._names[ident] = (now, result.name)
        return {i: self._names[i][1] if i in self._names else i for i in ids}

    async def customer_topics(self, chats: Iterable[Chat], identity: str) -> List[ChatTopic]:
        """
        Topic aggregation restricted to customer counterparts. Counterpart
        profiles are fetched concurrently and joined before anything is returned.
        """
        topics = aggregate_topics(chats, identity)
        users = await asyncio.gather(
            *(self.users.get_user(t.counterpart) for t in topics), return_exceptions=True
        )
        result = []
        for topic, user in zip(topics, users):
            if isinstance(user, BaseException):
                _logger.error(f"Error fetching user {topic.counterpart}: {user}")
                continue
            if user is None or user.role != UserRole.CUSTOMER:
                continue
            result.append(dataclasses.replace(topic, user=user))
        return result


class MessageFeed:
    """
    Live, paginated view of one chat's messages, oldest first.

    The newest page is followed through a subscription; load_more() pulls
    older pages in front of what is already loaded. Whenever the newest
    message was written by someone else the chat is marked read for viewer.
    """

    def __init__(
        self,
        registry: ChatRegistry,
        chat_id: str,
        viewer: str,
        on_change: Optional[Callable[[List[ChatMessage]], None]] = None,
    ):
        self.registry = registry
        self.chat_id = chat_id
        self.viewer = viewer
        self.on_change = on_change
        self.has_more = True
        self.loading_more = False
        self._by_id: Dict[str, ChatMessage] = {}
        self._oldest: Optional[DocumentSnapshot] = None
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def messages(self) -> List[ChatMessage]:
        return sorted(self._by_id.values(), key=lambda m: (m.timestamp, m.id))

    def _track_oldest(self, snaps: Sequence[DocumentSnapshot]) -> None:
        for snap in snaps:
            msg = self._by_id.get(snap.id)
            if msg is None:
                continue
            oldest = self._by_id.get(self._oldest.id) if self._oldest else None
            if oldest is None or (msg.timestamp, msg.id) < (oldest.timestamp, oldest.id):
                self._oldest = snap

    async def open(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self.registry.store.subscribe(
            messages_collection(self.chat_id),
            order_by="timestamp",
            descending=True,
            limit=self.registry.page_size,
        )
        try:
            first = await anext(self._subscription)
            await self._apply(first.documents, initial=True)
        except BaseException:
            self._subscription.close()
            self._subscription = None
            raise
        self._task = asyncio.create_task(self._consume())

    async def _consume(self) -> None:
        async for batch in self._subscription:
            changed = [c.snapshot for c in batch.changes if c.kind != "removed"]
            try:
                await self._apply(changed)
            except Exception:
                _logger.exception(f"Feed listener for chat {self.chat_id} failed; still following.")

    async def _apply(self, snaps: Sequence[DocumentSnapshot], initial: bool = False) -> None:
        for msg, snap in zip(map(decode_message, snaps), snaps):
            if msg is None:
                _logger.warning(f"Skipping unreadable message {snap.id}")
                continue
            self._by_id[msg.id] = msg
        self._track_oldest(snaps)
        if initial:
            self.has_more = len(snaps) == self.registry.page_size
        if self.on_change is not None:
            self.on_change(self.messages)
        await self._auto_mark_read()

    async def _auto_mark_read(self) -> None:
        messages = self.messages
        if not messages or messages[-1].sender_id == self.viewer:
            return
        try:
            await self.registry.mark_read(self.chat_id, self.viewer)
        except (StoreError, NotFound, DecodeError, ValidationError) as exc:
            _logger.error(f"Error updating unread status for chat {self.chat_id}: {exc}")

    async def load_more(self) -> List[ChatMessage]:
        """Prepend the next older page; returns the messages it added."""
        if self.loading_more or not self.has_more:
            return []
        self.loading_more = True
        try:
            page = await self.registry.fetch_message_page(self.chat_id, self._oldest)
        finally:
            self.loading_more = False
        added = [m for m in page.messages if m.id not in self._by_id]
        for msg in page.messages:
            self._by_id[msg.id] = msg
        if page.cursor is not None and page.messages:
            self._oldest = page.cursor
        self.has_more = page.has_more
        if added and self.on_change is not None:
            self.on_change(self.messages)
        return sorted(added, key=lambda m: (m.timestamp, m.id))

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                _logger.error(f"Feed for chat {self.chat_id} had stopped with an error: {exc}")
        self._subscription = None
        self._task = None
