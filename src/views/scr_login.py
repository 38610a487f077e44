from textual import on, work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.validation import Function, Length
from textual.widgets import Button, Input, Label, TabbedContent, TabPane

from db.errors import StickerDeskError
from utils.messages import UserLoginMessage
from views.base_screen import BaseScreen
from views.modal_dialog import QuitDialogModal


def _looks_like_email(value: str) -> bool:
    name, _, domain = value.strip().partition("@")
    return bool(name) and "." in domain


class LoginScreen(BaseScreen):
    """
    Email/password sign in and customer sign up.
    Dismisses once a session is established on app.state.
    """

    DEFAULT_CSS = """
    #div-login, #div-reg {
        width: 60;
        height: auto;
        padding: 1 2;
    }
    #div-login-btns, #div-reg-btns {
        height: auto;
        align-horizontal: right;
    }
    """

    def __init__(self):
        super().__init__()
        self.configure(header_sub_title="Login", show_sidebar=False)

    def compose(self) -> ComposeResult:
        email_check = [Function(_looks_like_email, "Not an email address.")]
        yield from super().compose()
        with TabbedContent(id="super-tab-loginscr"):
            with TabPane("Login", id="tab-login"):
                with Vertical(id="div-login"):
                    yield Label("Email")
                    yield Input(
                        placeholder="user@example.com",
                        validators=email_check,
                        id="input-login-email",
                    )
                    yield Label("Password")
                    yield Input(password=True, id="input-login-pwd")
                    with Horizontal(id="div-login-btns"):
                        yield Button("Quit", id="btn-quit")
                        yield Button("Login", id="btn-login", variant="primary")

            with TabPane("Sign up", id="tab-signup"):
                with Vertical(id="div-reg"):
                    yield Label("Name")
                    yield Input(
                        placeholder="Jane Doe",
                        validators=[Length(minimum=1, failure_description="Name is required.")],
                        id="input-reg-name",
                    )
                    yield Label("Email")
                    yield Input(
                        placeholder="user@example.com",
                        validators=email_check,
                        id="input-reg-email",
                    )
                    yield Label("Password")
                    yield Input(password=True, id="input-reg-pwd")
                    yield Label("Confirm password")
                    yield Input(password=True, id="input-reg-pwd2")
                    with Horizontal(id="div-reg-btns"):
                        yield Button("Register", id="btn-reg", variant="primary")

    def on_mount(self):
        self.query_one("#input-login-email").focus()

    @on(Input.Submitted, "#input-login-email")
    def focus_login_password(self) -> None:
        self.query_one("#input-login-pwd").focus()

    @on(Input.Submitted, "#input-login-pwd")
    @on(Button.Pressed, "#btn-login")
    @work(exclusive=True)
    async def handle_login_submit(self) -> None:
        email_input = self.query_one("#input-login-email", Input)
        pwd_input = self.query_one("#input-login-pwd", Input)

        if not _looks_like_email(email_input.value) or not pwd_input.value:
            self.notify("Enter your email and password.", severity="error")
            return

        try:
            user = await self.app.state.sign_in(email_input.value, pwd_input.value)
        except StickerDeskError as exc:
            self.notify(str(exc), severity="error")
            pwd_input.value = ""
            pwd_input.focus()
            pwd_input.add_class("-invalid")
            return

        self.notify(f"Hello {user.display_name}!")
        self.app.post_message(UserLoginMessage())
        self.dismiss()

    @on(Input.Submitted, "#input-reg-pwd2")
    @on(Button.Pressed, "#btn-reg")
    @work(exclusive=True)
    async def handle_registration_submit(self) -> None:
        name = self.query_one("#input-reg-name", Input)
        email = self.query_one("#input-reg-email", Input)
        pwd = self.query_one("#input-reg-pwd", Input).value
        pwd2 = self.query_one("#input-reg-pwd2", Input)

        if not (name.value.strip() and _looks_like_email(email.value) and pwd):
            self.notify("Make sure all inputs are filled.", severity="error")
            return
        if pwd != pwd2.value:
            self.notify("Passwords do not match.", severity="error")
            pwd2.value = ""
            pwd2.focus()
            return

        try:
            user = await self.app.state.sign_up(email.value, pwd, name.value)
        except StickerDeskError as exc:
            self.notify(str(exc), severity="error")
            return

        self.notify(f"Welcome, {user.display_name}!")
        self.app.post_message(UserLoginMessage())
        self.dismiss()

    @on(Button.Pressed, "#btn-quit")
    def handle_quit_(self) -> None:
        self.app.push_screen(QuitDialogModal())
