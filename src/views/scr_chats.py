import asyncio
from pathlib import Path
from typing import Dict, List, Optional

from textual import on, work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.events import ScreenResume, ScreenSuspend
from textual.widgets import (
    Button,
    DataTable,
    Input,
    Label,
    ListItem,
    ListView,
    TabbedContent,
    TabPane,
)

from db.chats import ChatTopic, MessageFeed, has_unread, message_preview
from db.errors import StickerDeskError, ValidationError
from db.models import Chat, ChatMessage, MediaType
from db.sync import WATCH_CHATS, ChatListView
from utils.messages import ChatsChangedMessage, FeedChangedMessage
from utils.permissions import can_delete_chats
from views.base_screen import BaseScreen
from views.modal_dialog import ConfirmDeleteModal
from views.modal_new_chat import NewChatModal

MEDIA_SUFFIXES = {
    ".jpg": MediaType.IMAGE,
    ".jpeg": MediaType.IMAGE,
    ".png": MediaType.IMAGE,
    ".mp4": MediaType.VIDEO,
    ".mov": MediaType.VIDEO,
    ".pdf": MediaType.PDF,
}


class ChatsScreen(BaseScreen):
    """
    Chat list on the left (all chats, and for staff the customer topics),
    the selected chat's messages on the right. Older messages load on demand.

    Typing ``/file <path>`` in the message box sends that file as media.
    """

    DEFAULT_CSS = """
    #div-chat-list {
        width: 45%;
    }
    #div-chat-view {
        width: 1fr;
    }
    #list-messages {
        height: 1fr;
    }
    #hort-send {
        height: auto;
    }
    #input-message {
        width: 1fr;
    }
    """

    BINDINGS = [
        Binding("ctrl+n", "new_chat", "New Chat", show=True),
        Binding("ctrl+d", "delete_chat", "Delete Chat", show=True),
    ]

    def __init__(self) -> None:
        super().__init__()
        self._view = ChatListView((), 0)
        self._names: Dict[str, str] = {}
        self._feed: Optional[MessageFeed] = None
        self._chat_id: Optional[str] = None

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with Horizontal():
            with Vertical(id="div-chat-list"):
                with TabbedContent(id="tabs-chats"):
                    with TabPane("Chats", id="tab-all-chats"):
                        yield DataTable(id="table-chats")
                    with TabPane("Customers", id="tab-customers"):
                        yield DataTable(id="table-topics")
            with Vertical(id="div-chat-view"):
                yield Label("Select a chat", id="label-chat-title")
                yield Button("Load older messages", id="btn-load-more", disabled=True)
                yield ListView(id="list-messages")
                with Horizontal(id="hort-send"):
                    yield Input(placeholder="Message, or /file <path>", id="input-message")
                    yield Button("Send", id="btn-send", variant="primary")

    def on_mount(self) -> None:
        chats = self.query_one("#table-chats", DataTable)
        chats.cursor_type = "row"
        chats.add_columns("", "Chat", "Last message", "When")
        topics = self.query_one("#table-topics", DataTable)
        topics.cursor_type = "row"
        topics.add_columns("", "Customer", "Chats", "Last activity")
        if not self.app.state.is_staff:
            self.query_one(TabbedContent).hide_tab("tab-customers")

    # ---------------------------
    # Watch lifecycle
    # ---------------------------

    @on(ScreenResume)
    @work(exclusive=True, group="watch")
    async def start_watch(self) -> None:
        if self.app.sync is None:
            return
        try:
            await self.app.sync.watch_chats(
                lambda view: self.post_message(ChatsChangedMessage(view))
            )
        except StickerDeskError as exc:
            self.notify(f"Could not load chats: {exc}", severity="error")
            return
        if self._chat_id is not None:
            self.open_chat(self._chat_id)

    @on(ScreenSuspend)
    async def stop_watch(self) -> None:
        await self._close_feed()
        if self.app.sync is not None:
            await self.app.sync.release(WATCH_CHATS)

    async def _close_feed(self) -> None:
        if self._feed is not None:
            await self._feed.close()
            self._feed = None

    # ---------------------------
    # Chat list
    # ---------------------------

    @on(ChatsChangedMessage)
    @work(exclusive=True, group="chat-list")
    async def handle_chats_changed(self, message: ChatsChangedMessage) -> None:
        self._view = message.view
        me = self.app.state.identity.email
        ids = {p for chat in self._view.chats for p in chat.participants}
        self._names = await self.app.chats.participant_names(sorted(ids))

        table = self.query_one("#table-chats", DataTable)
        table.clear()
        for chat in self._view.chats:
            table.add_row(
                "●" if has_unread(chat, me) else "",
                self._chat_title(chat),
                message_preview(chat.last_message)[:40],
                f"{chat.last_message.timestamp:%m-%d %H:%M}",
                key=chat.id,
            )

        if self.app.state.is_staff:
            topics = await self.app.chats.customer_topics(self._view.chats, me)
            self._show_topics(topics)

    def _show_topics(self, topics: List[ChatTopic]) -> None:
        table = self.query_one("#table-topics", DataTable)
        table.clear()
        for topic in topics:
            table.add_row(
                "●" if topic.has_unread else "",
                topic.user.display_name if topic.user else topic.counterpart,
                str(len(topic.chat_ids)),
                f"{topic.last_activity:%m-%d %H:%M}",
                # the newest chat of the group opens on selection
                key=topic.chat_ids[0],
            )

    def _chat_title(self, chat: Chat) -> str:
        if chat.title:
            return chat.title
        me = self.app.state.identity.email
        others = [self._names.get(p, p) for p in chat.participants if p != me]
        return ", ".join(others) or me

    @on(DataTable.RowSelected)
    def handle_chat_selected(self, event: DataTable.RowSelected) -> None:
        if event.row_key.value != self._chat_id or self._feed is None:
            self.open_chat(event.row_key.value)

    # ---------------------------
    # Messages
    # ---------------------------

    @work(exclusive=True, group="feed")
    async def open_chat(self, chat_id: str) -> None:
        await self._close_feed()
        self._chat_id = chat_id
        chat = next((c for c in self._view.chats if c.id == chat_id), None)
        title = self._chat_title(chat) if chat else chat_id
        self.query_one("#label-chat-title", Label).update(title)
        self.query_one("#list-messages", ListView).clear()

        feed = self.app.chats.open_feed(
            chat_id,
            self.app.state.identity.email,
            lambda messages: self.post_message(FeedChangedMessage(chat_id, messages)),
        )
        try:
            await feed.open()
        except StickerDeskError as exc:
            self.notify(f"Could not open chat: {exc}", severity="error")
            return
        self._feed = feed
        self.query_one("#btn-load-more", Button).disabled = not feed.has_more

    @on(FeedChangedMessage)
    async def handle_feed_changed(self, message: FeedChangedMessage) -> None:
        if message.chat_id != self._chat_id:
            return
        await self._render_messages(message.messages)

    async def _render_messages(self, messages: List[ChatMessage]) -> None:
        me = self.app.state.identity.email
        names = await self.app.chats.participant_names(sorted({m.sender_id for m in messages}))
        items = []
        for m in messages:
            who = "You" if m.sender_id == me else names.get(m.sender_id, m.sender_id)
            body = m.text if m.text else f"[{message_preview(m)}] {m.media_url}"
            items.append(ListItem(Label(f"{m.timestamp:%m-%d %H:%M} {who}: {body}")))
        list_view = self.query_one("#list-messages", ListView)
        await list_view.clear()
        await list_view.extend(items)
        list_view.scroll_end(animate=False)

    @on(Button.Pressed, "#btn-load-more")
    @work(exclusive=True, group="feed-more")
    async def handle_load_more(self) -> None:
        if self._feed is None:
            return
        try:
            added = await self._feed.load_more()
        except StickerDeskError as exc:
            self.notify(str(exc), severity="error")
            return
        self.query_one("#btn-load-more", Button).disabled = not self._feed.has_more
        if not added:
            self.notify("No older messages.")

    @on(Button.Pressed, "#btn-send")
    @on(Input.Submitted, "#input-message")
    @work(exclusive=True, group="send")
    async def handle_send(self) -> None:
        if self._chat_id is None:
            self.notify("Select a chat first.", severity="warning")
            return
        box = self.query_one("#input-message", Input)
        text = box.value.strip()
        if not text:
            return
        sender = self.app.state.identity.email
        try:
            if text.startswith("/file "):
                await self._send_file(sender, text.removeprefix("/file ").strip())
            else:
                await self.app.chats.send_message(self._chat_id, sender, text=text)
        except (StickerDeskError, OSError) as exc:
            self.notify(str(exc), severity="error")
            return
        box.value = ""

    async def _send_file(self, sender: str, raw_path: str) -> None:
        path = Path(raw_path).expanduser()
        media_type = MEDIA_SUFFIXES.get(path.suffix.lower())
        if media_type is None:
            raise ValidationError(f"Cannot send {path.suffix or 'this'} files.")
        data = await asyncio.to_thread(path.read_bytes)
        await self.app.chats.send_media(self._chat_id, sender, data, media_type)

    # ---------------------------
    # Actions
    # ---------------------------

    @work(exclusive=True)
    async def action_new_chat(self) -> None:
        if self.app.state.is_suspended:
            return
        chat = await self.app.push_screen_wait(NewChatModal())
        if chat is not None:
            self.notify("Chat created.")
            self.open_chat(chat.id)

    @work(exclusive=True)
    async def action_delete_chat(self) -> None:
        user = self.app.state.user
        if self._chat_id is None or not can_delete_chats(user):
            return
        if not await self.app.push_screen_wait(
            ConfirmDeleteModal("this chat", "It disappears for every participant.")
        ):
            return
        try:
            await self.app.chats.delete_chat(self._chat_id, user)
        except StickerDeskError as exc:
            self.notify(str(exc), severity="error")
            return
        await self._close_feed()
        projection = self.app.sync.projection(WATCH_CHATS)
        if projection is not None and projection.remove_local(self._chat_id):
            self.post_message(ChatsChangedMessage(self.app.sync.chat_list_view(projection.items)))
        self._chat_id = None
        self.query_one("#label-chat-title", Label).update("Select a chat")
        await self.query_one("#list-messages", ListView).clear()
        self.notify("Chat deleted.")
