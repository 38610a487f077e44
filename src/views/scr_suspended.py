from textual import on
from textual.app import ComposeResult
from textual.containers import Vertical
from textual.widgets import Button, Label

from utils.messages import UserLogoutMessage
from views.base_screen import BaseScreen


class SuspendedScreen(BaseScreen):
    """
    Shown instead of the app for suspended accounts.
    """

    DEFAULT_CSS = """
    #div-suspended {
        align: center middle;
    }
    #div-suspended Label {
        margin: 1 0;
    }
    """

    def __init__(self):
        super().__init__()
        self.configure(header_sub_title="Account suspended", show_sidebar=False)

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with Vertical(id="div-suspended"):
            yield Label("Your account has been suspended.")
            yield Label("Please contact your account manager to restore access.")
            yield Button("Log out", id="btn-logout", variant="error")

    @on(Button.Pressed, "#btn-logout")
    def handle_logout(self) -> None:
        self.dismiss()
        self.app.post_message(UserLogoutMessage())
