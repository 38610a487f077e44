from typing import List

from textual.message import Message

from db.models import ChatMessage, Order
from db.sync import ChatListView


class QuitRequestedMessage(Message):
    """
    Posted by the quit dialog; the app ends the session and exits.
    """

    bubble = True


class UserLogoutMessage(Message):
    """
    Posted from the sidebar; the app releases every watch before signing out.
    """

    bubble = True


class UserLoginMessage(Message):
    """
    Posted after sign in or sign up so visible screens redraw.
    """

    bubble = True


class OrdersChangedMessage(Message):
    """
    Posted by the sync coordinator callback whenever the watched orders change.
    Carries the full ordered list, newest first.
    """

    bubble = True

    def __init__(self, orders: List[Order]) -> None:
        super().__init__()
        self.orders = orders


class ChatsChangedMessage(Message):
    """
    Posted whenever the chat projection changes; carries badge count and topics too.
    """

    bubble = True

    def __init__(self, view: ChatListView) -> None:
        super().__init__()
        self.view = view


class ModeSwitchedMessage(Message):
    """
    Posted alongside every switch_mode call.
    """

    bubble = True

    def __init__(self, old_mode: str, new_mode: str) -> None:
        super().__init__()
        self.old_mode = old_mode
        self.new_mode = new_mode


class FeedChangedMessage(Message):
    """
    Posted by an open message feed when its messages change (oldest first).
    """

    bubble = True

    def __init__(self, chat_id: str, messages: List[ChatMessage]) -> None:
        super().__init__()
        self.chat_id = chat_id
        self.messages = messages
