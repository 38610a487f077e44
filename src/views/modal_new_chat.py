from typing import List, Optional

from textual import on, work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label, Select, SelectionList

from db.errors import StickerDeskError
from db.models import Chat, ChatType, User
from utils.debounce import Debouncer
from utils.permissions import can_message


class NewChatModal(ModalScreen[Optional[Chat]]):
    """
    Pick participants by name (search as you type) and start a chat.
    Team chats only list people the current user may message.
    """

    DEFAULT_CSS = """
    NewChatModal {
        align: center middle;
    }
    #div-new-chat {
        width: 70;
        height: auto;
        max-height: 90%;
        padding: 1 2;
        border: thick $primary 80%;
        background: $surface;
    }
    #selection-users {
        height: 10;
    }
    #hort-chat-btns {
        height: auto;
        align-horizontal: right;
    }
    """

    def __init__(self) -> None:
        super().__init__()
        self._debouncer: Debouncer[List[User]] = Debouncer(self.app.settings.search_debounce)
        self._found: dict = {}

    def compose(self) -> ComposeResult:
        staff = self.app.state.is_staff
        with Vertical(id="div-new-chat"):
            yield Label("Title (optional)")
            yield Input(id="input-chat-title")
            yield Label("Type")
            yield Select(
                [("Team", ChatType.TEAM), ("Customer", ChatType.CUSTOMER)],
                value=ChatType.TEAM,
                allow_blank=False,
                id="select-chat-type",
                disabled=not staff,
            )
            yield Label("Find people")
            yield Input(placeholder="Start typing a name...", id="input-user-search")
            yield SelectionList[str](id="selection-users")
            with Horizontal(id="hort-chat-btns"):
                yield Button("Cancel", id="btn-cancel")
                yield Button("Create", id="btn-create", variant="success")

    def on_mount(self) -> None:
        self.query_one("#input-user-search").focus()

    @on(Input.Changed, "#input-user-search")
    def handle_search(self, message: Input.Changed) -> None:
        self._debouncer.submit(message.value, self.app.users.search_users, self._show_users)

    def _show_users(self, users: List[User]) -> None:
        me = self.app.state.user
        chat_type = self.query_one("#select-chat-type", Select).value
        selection = self.query_one(SelectionList)
        keep = list(selection.selected)
        selection.clear_options()
        # picked people stay listed while the search changes
        for email in keep:
            user = self._found[email]
            selection.add_option((f"{user.display_name} <{email}>", email, True))
        for user in users:
            if user.email == me.email or user.email in keep:
                continue
            if chat_type == ChatType.TEAM and not can_message(me, user.role):
                continue
            self._found[user.email] = user
            selection.add_option(
                (f"{user.display_name} <{user.email}> ({user.role.value})", user.email, False)
            )

    @on(Button.Pressed, "#btn-cancel")
    def handle_cancel(self) -> None:
        self._debouncer.cancel()
        self.dismiss(None)

    @on(Button.Pressed, "#btn-create")
    @work(exclusive=True)
    async def handle_create(self) -> None:
        participants = list(self.query_one(SelectionList).selected)
        if not participants:
            self.notify("Select at least one person.", severity="warning")
            return
        try:
            chat = await self.app.chats.create_chat(
                self.app.state.user,
                participants,
                title=self.query_one("#input-chat-title", Input).value,
                chat_type=self.query_one("#select-chat-type", Select).value,
            )
        except StickerDeskError as exc:
            self.notify(str(exc), severity="error")
            return
        self._debouncer.cancel()
        self.dismiss(chat)
