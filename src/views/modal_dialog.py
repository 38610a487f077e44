from typing import Literal

from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal
from textual.screen import ModalScreen
from textual.widgets import Button, Label

from utils.messages import QuitRequestedMessage

Tone = Literal["default", "warning", "error"]


class ConfirmModal(ModalScreen[bool]):
    """
    Yes/no prompt. Dismisses with True on confirm, False on cancel or escape.
    Error-toned prompts start with focus on cancel.
    """

    DEFAULT_CSS = """
    ConfirmModal {
        align: center middle;
    }
    #div-confirm {
        width: 60;
        height: auto;
        padding: 1 2;
        border: thick $primary 80%;
        background: $surface;
    }
    #label-detail {
        color: $text-muted;
        margin-top: 1;
    }
    #div-confirm-buttons {
        height: auto;
        margin-top: 1;
        align-horizontal: right;
    }
    #div-confirm-buttons Button {
        margin-left: 1;
    }
    """

    BINDINGS = [Binding("escape", "cancel", "Cancel", show=False)]

    def __init__(
        self,
        caption: str,
        detail: str = "",
        confirm_text: str = "OK",
        cancel_text: str = "Cancel",
        tone: Tone = "default",
    ):
        super().__init__()
        self.caption = caption
        self.detail = detail
        self.confirm_text = confirm_text
        self.cancel_text = cancel_text
        self.tone = tone

    def compose(self) -> ComposeResult:
        with Container(id="div-confirm"):
            yield Label(self.caption, id="label-caption")
            if self.detail:
                yield Label(self.detail, id="label-detail")
            with Horizontal(id="div-confirm-buttons"):
                if self.cancel_text:
                    yield Button(self.cancel_text, id="btn-cancel")
                yield Button(
                    self.confirm_text,
                    variant="primary" if self.tone == "default" else self.tone,
                    id="btn-confirm",
                )

    def on_mount(self) -> None:
        if self.tone == "error" and self.cancel_text:
            self.query_one("#btn-cancel").focus()
        else:
            self.query_one("#btn-confirm").focus()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss(event.button.id == "btn-confirm")

    def action_cancel(self) -> None:
        self.dismiss(False)


class ConfirmDeleteModal(ConfirmModal):
    def __init__(self, subject: str, detail: str = "This cannot be undone."):
        super().__init__(f"Delete {subject}?", detail, "Delete", "Cancel", "error")


class LogoutDialogModal(ConfirmModal):
    def __init__(self):
        super().__init__(
            "Log out?", "Live updates stop until you sign in again.", "Log out", "Stay", "warning"
        )


class QuitDialogModal(ConfirmModal):
    def __init__(self):
        super().__init__("Quit Sticker Desk?", confirm_text="Quit", tone="error")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "btn-confirm":
            self.post_message(QuitRequestedMessage())
        super().on_button_pressed(event)
