# push notifications: outbox documents written by senders, relayed to devices
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Iterable, Optional, Protocol

from db.database import DocumentStore, Subscription
from db.errors import StickerDeskError
from db.models import DocumentSnapshot, User
from db.users import UserDirectory
from utils.config import COLLECTION_NOTIFICATIONS
from utils.logger import get_logger

_logger = get_logger(__name__)


def sender_display_name(user: Optional[User], email: str) -> str:
    if user is not None and user.name:
        return user.name
    return email.split("@")[0] or email


class NotificationQueue:
    """Writes one outbox document per recipient that has a push token."""

    def __init__(self, store: DocumentStore, users: UserDirectory):
        self.store = store
        self.users = users

    async def enqueue_message_notifications(
        self,
        chat_id: str,
        participants: Iterable[str],
        sender_email: str,
        preview: str,
    ) -> int:
        recipients = [p for p in dict.fromkeys(participants) if p != sender_email]
        if not recipients:
            return 0

        sender, *profiles = await asyncio.gather(
            self.users.get_user(sender_email),
            *(self.users.get_user(r) for r in recipients),
        )
        title = sender_display_name(sender, sender_email)

        queued = 0
        for email, profile in zip(recipients, profiles):
            if profile is None or not profile.push_token:
                _logger.debug(f"No push token for {email}; skipping.")
                continue
            await self.store.add_document(
                COLLECTION_NOTIFICATIONS,
                {
                    "token": profile.push_token,
                    "notification": {"title": title, "body": preview},
                    "data": {"chatId": chat_id, "type": "message"},
                },
            )
            queued += 1
        _logger.info(f"Queued {queued} notification(s) for chat {chat_id}")
        return queued


def build_push_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Device payload: high priority alert with badge and default sound."""
    notification = data.get("notification") or {}
    return {
        "token": data["token"],
        "data": dict(data.get("data") or {}),
        "apns": {
            "headers": {"apns-priority": "10"},
            "payload": {
                "aps": {
                    "alert": {
                        "title": notification.get("title", ""),
                        "body": notification.get("body", ""),
                    },
                    "badge": 1,
                    "sound": "default",
                }
            },
        },
    }


class PushSender(Protocol):
    async def send(self, payload: Dict[str, Any]) -> str: ...


class LoggingPushSender:
    """Stand-in delivery channel: records the payload in the log."""

    def __init__(self):
        self.sent = []

    async def send(self, payload: Dict[str, Any]) -> str:
        self.sent.append(payload)
        _logger.info(f"Push -> {payload['token']}: {json.dumps(payload['apns']['payload'])}")
        return f"local-{len(self.sent)}"


class PushRelay:
    """
    Drains the notifications outbox. Each new document is delivered once and
    then deleted, whether delivery worked or not.
    """

    def __init__(self, store: DocumentStore, sender: PushSender):
        self.store = store
        self.sender = sender
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._subscription = await self.store.subscribe(COLLECTION_NOTIFICATIONS)
        self._task = asyncio.create_task(self._run())
        _logger.info("Push relay started.")

    async def _run(self) -> None:
        async for batch in self._subscription:
            for change in batch.changes:
                if change.kind == "added":
                    await self.process(change.snapshot)

    async def process(self, snapshot: DocumentSnapshot) -> None:
        token = snapshot.data.get("token")
        if not token:
            _logger.error(f"Missing push token for notification {snapshot.id}")
            await self._discard(snapshot.id)
            return
        try:
            response = await self.sender.send(build_push_payload(snapshot.data))
            _logger.info(f"Sent notification {snapshot.id}: {response}")
        except Exception as exc:
            _logger.error(f"Error sending notification {snapshot.id}: {exc}")
        await self._discard(snapshot.id)

    async def _discard(self, doc_id: str) -> None:
        try:
            await self.store.delete_document(COLLECTION_NOTIFICATIONS, doc_id)
        except StickerDeskError as exc:
            _logger.error(f"Error deleting notification {doc_id}: {exc}")

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._subscription = None
        self._task = None
        _logger.info("Push relay stopped.")
