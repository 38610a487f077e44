# runtime settings, read once from the environment
import os
from dataclasses import dataclass

COLLECTION_USERS = "users"
COLLECTION_ORDERS = "orders"
COLLECTION_CHATS = "chats"
COLLECTION_NOTIFICATIONS = "notifications"
COLLECTION_AUTH = "auth_accounts"

DEFAULT_DB_PATH = "data/sticker_desk.sqlite"
DEFAULT_BLOB_DIR = "data/blobs"

MESSAGE_PAGE_SIZE = 20
SEARCH_DEBOUNCE_SECONDS = 0.5
NAME_CACHE_SECONDS = 300.0


def messages_collection(chat_id: str) -> str:
    """Path of the message sub-log of a chat."""
    return f"{COLLECTION_CHATS}/{chat_id}/messages"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    blob_dir: str = DEFAULT_BLOB_DIR
    message_page_size: int = MESSAGE_PAGE_SIZE
    search_debounce: float = SEARCH_DEBOUNCE_SECONDS
    name_cache_seconds: float = NAME_CACHE_SECONDS
    debug: bool = False
    log_level: str | None = None


def load_settings() -> Settings:
    """
    Build Settings from STICKER_DESK_* environment variables.
    Unset or malformed values fall back to the defaults above.
    """
    debounce_ms = _env_int(
        "STICKER_DESK_SEARCH_DEBOUNCE_MS", int(SEARCH_DEBOUNCE_SECONDS * 1000)
    )
    return Settings(
        db_path=os.getenv("STICKER_DESK_DB_PATH", DEFAULT_DB_PATH),
        blob_dir=os.getenv("STICKER_DESK_BLOB_DIR", DEFAULT_BLOB_DIR),
        message_page_size=max(
            _env_int("STICKER_DESK_MESSAGE_PAGE_SIZE", MESSAGE_PAGE_SIZE), 1
        ),
        search_debounce=max(debounce_ms, 0) / 1000,
        name_cache_seconds=max(
            _env_int("STICKER_DESK_NAME_CACHE_SECONDS", int(NAME_CACHE_SECONDS)), 0
        ),
        debug=bool(os.getenv("STICKER_DESK_DEBUG") or os.getenv("DEBUG")),
        log_level=os.getenv("STICKER_DESK_LOG_LEVEL"),
    )
