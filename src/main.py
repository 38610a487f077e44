from typing import Optional

from textual import on, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import LoadingIndicator

from db.auth import LocalAuthProvider
from db.chats import ChatRegistry
from db.database import DocumentStore
from db.notifications import LoggingPushSender, NotificationQueue, PushRelay
from db.orders import OrderLedger
from db.storage import FileBlobStorage
from db.sync import SyncCoordinator
from db.users import UserDirectory
from utils.config import Settings, load_settings
from utils.logger import get_logger
from utils.messages import (
    ChatsChangedMessage,
    ModeSwitchedMessage,
    QuitRequestedMessage,
    UserLogoutMessage,
)
from utils.state import GlobalState
from views.base_screen import Sidebar
from views.scr_chats import ChatsScreen
from views.scr_login import LoginScreen
from views.scr_orders import OrdersScreen
from views.scr_suspended import SuspendedScreen

_logger = get_logger(__name__)

# app level watch feeding the sidebar badge, independent of the chats screen
WATCH_BADGE = "chat-badge"


class StickerDeskApp(App):
    BINDINGS = [
        Binding("ctrl+t", "switch_light", "Toggle Theme", show=True),
    ]

    MODES = {
        "orders": OrdersScreen,
        "chats": ChatsScreen,
    }

    MODE_TITLES = {"orders": "Orders", "chats": "Chats"}

    state: GlobalState
    sync: Optional[SyncCoordinator]

    def __init__(self, settings: Optional[Settings] = None):
        super().__init__()
        self.settings = settings or load_settings()
        self.store = DocumentStore(self.settings.db_path)
        self.storage = FileBlobStorage(self.settings.blob_dir)
        self.auth = LocalAuthProvider(self.store)
        self.users = UserDirectory(self.store)
        self.ledger = OrderLedger(self.store, self.storage)
        self.chats = ChatRegistry(
            self.store,
            self.users,
            notifications=NotificationQueue(self.store, self.users),
            storage=self.storage,
            page_size=self.settings.message_page_size,
            name_ttl=self.settings.name_cache_seconds,
        )
        self.relay = PushRelay(self.store, LoggingPushSender())
        self.state = GlobalState(self.auth, self.users)
        self.sync = None
        self.badge_count = 0

    def compose(self) -> ComposeResult:
        yield LoadingIndicator()

    async def on_mount(self) -> None:
        await self.relay.start()
        self.main_flow()

    def action_switch_light(self):
        if self.theme == "textual-dark":
            self.theme = "solarized-light"
        else:
            self.theme = "textual-dark"
        self.notify(f"Theme changed to {self.theme}")

    @on(ChatsChangedMessage)
    def handle_badge(self, message: ChatsChangedMessage) -> None:
        self.badge_count = message.view.badge_count
        for sidebar in self.screen.query(Sidebar):
            sidebar.show_badge(self.badge_count)

    @on(ModeSwitchedMessage)
    def handle_mode_switched(self, message: ModeSwitchedMessage) -> None:
        _logger.debug(f"Mode {message.old_mode} -> {message.new_mode}")

    async def _end_session(self) -> None:
        if self.sync is not None:
            await self.sync.release_all()
            self.sync = None
        await self.state.sign_out()
        self.badge_count = 0

    @on(UserLogoutMessage)
    @work
    async def handle_user_logout(self):
        await self._end_session()
        self.notify("Logout successful.")
        self.main_flow()

    @on(QuitRequestedMessage)
    @work
    async def handle_quit(self):
        await self._end_session()
        await self.relay.stop()
        self.exit()

    @work
    async def main_flow(self):
        await self.push_screen_wait(LoginScreen())
        if self.state.is_suspended:
            await self.push_screen(SuspendedScreen())
            return

        self.sync = SyncCoordinator(self.store, self.state.identity)
        await self.sync.watch_chats(
            lambda view: self.post_message(ChatsChangedMessage(view)), key=WATCH_BADGE
        )
        self.post_message(ModeSwitchedMessage(self.current_mode, "orders"))
        await self.switch_mode("orders")


def main() -> None:
    app = StickerDeskApp()
    app.run()


if __name__ == "__main__":
    main()
