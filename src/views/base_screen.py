from typing import List, Tuple

from textual import on, work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container
from textual.events import Resize
from textual.screen import Screen
from textual.widgets import Button, Footer, Header, Label, ListItem, ListView, Markdown

from db.models import User, UserRole
from utils.messages import ModeSwitchedMessage, UserLoginMessage, UserLogoutMessage
from utils.pure import generate_markdown_table
from views.modal_dialog import LogoutDialogModal, QuitDialogModal
from views.modal_resize import ResizeScreenPromptModal

MENU_ITEM_PREFIX = "list-menu-item-"


def profile_rows(user: User) -> List[List[str]]:
    rows = [
        ["Name", user.display_name],
        ["Email", user.email],
        ["Role", user.role.value],
    ]
    if user.role == UserRole.CUSTOMER:
        rows.append(["Manager", user.account_manager_id or "-"])
        if user.brands:
            rows.append(["Brands", ", ".join(b.name for b in user.brands)])
    elif user.role == UserRole.ACCOUNT_MANAGER:
        rows.append(["Customers", str(len(user.customer_ids))])
    return rows


class Sidebar(Container):
    """Signed-in profile, logout and the mode menu with the unread badge."""

    DEFAULT_CSS = """
    Sidebar {
        dock: left;
        width: 30;
        padding: 0 1;
        border-right: vkey $foreground 30%;
    }
    Sidebar ListView {
        height: auto;
    }
    """

    init_mode = ""

    def compose(self) -> ComposeResult:
        yield Label("Signed in as", id="label-info-1")
        yield Markdown("", id="md-userinfo")
        yield Button("Log out", id="btn-logout", variant="error")
        yield Label("Menu", id="label-info-2")
        yield ListView(id="list-menu")

    async def on_mount(self):
        self.init_mode = self.app.current_mode

        user = self.app.state.user
        if user is None:
            return
        await self.query_one(Markdown).update(
            generate_markdown_table(None, profile_rows(user), ["l", "l"])
        )

        list_menu: ListView = self.query_one("#list-menu")
        await list_menu.clear()
        await list_menu.extend(
            [ListItem(Label(title), id=MENU_ITEM_PREFIX + mode) for mode, title in self.app.MODE_TITLES.items()]
        )
        self.highlight_item(self.init_mode)
        self.show_badge(self.app.badge_count)

    async def on_list_view_selected(self, event: ListView.Selected):
        selected_mode = event.item.id.removeprefix(MENU_ITEM_PREFIX)
        self.highlight_item(self.init_mode)
        if self.app.current_mode != selected_mode:
            self.post_message(ModeSwitchedMessage(self.app.current_mode, selected_mode))
            await self.app.switch_mode(selected_mode)

    @on(Button.Pressed, "#btn-logout")
    @work
    async def handle_logout(self):
        if await self.app.push_screen_wait(LogoutDialogModal()):
            self.post_message(UserLogoutMessage())

    def show_badge(self, count: int) -> None:
        found = self.query(f"#{MENU_ITEM_PREFIX}chats")
        if not found:
            return
        title = self.app.MODE_TITLES["chats"]
        found.first().query_one(Label).update(f"{title} ({count})" if count else title)

    def highlight_item(self, mode: str):
        for item in self.query_one("#list-menu").children:
            item.highlighted = item.id == MENU_ITEM_PREFIX + mode


class BaseScreen(Screen):
    """
    Inherited by all screens, contains common elements like
    headers, footers, sidebar, and keybindings.
    """

    MIN_SIZE: Tuple[int, int] = (80, 24)

    BINDINGS = [
        Binding("ctrl+z", "quit", "Quit App", show=True),
    ]

    def __init__(self):
        super().__init__()

        self.configure()

    def configure(self, header_sub_title: str = "", show_sidebar: bool = True) -> None:
        """Header titles come from the app's mode table when this screen is a mode."""
        self.app.title = "Sticker Desk"
        self.sub_title = header_sub_title
        for mode, screen_cls in self.app.MODES.items():
            if type(self) is screen_cls:
                self.sub_title = self.app.MODE_TITLES.get(mode, header_sub_title)

        self._show_sidebar = show_sidebar

    def compose(self) -> ComposeResult:
        if self._show_sidebar:
            yield Sidebar()
        yield Header()
        yield Footer(show_command_palette=False)

    async def on_resize(self, event: Resize) -> None:
        min_width, min_height = self.MIN_SIZE
        if event.size.width < min_width or event.size.height < min_height:
            self.app.push_screen(ResizeScreenPromptModal(min_width, min_height))

    @on(UserLoginMessage)
    def handle_user_login(self):
        self.refresh()

    @work()
    async def action_quit(self):
        await self.app.push_screen_wait(QuitDialogModal())
