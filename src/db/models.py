# provide dataclass models
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Literal, Tuple


class UserRole(str, Enum):
    CUSTOMER = "customer"
    ACCOUNT_MANAGER = "accountManager"
    EMPLOYEE = "employee"
    ADMIN = "admin"
    SUSPENDED = "suspended"


class OrderStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    FLAGGED = "flagged"
    COMPLETED = "completed"


class ProductType(str, Enum):
    BAG = "bag"
    QP_BAG = "qp-bag"
    STICKER = "sticker"
    TAX = "tax"
    DISCOUNT = "discount"


class AttachmentType(str, Enum):
    IMAGE = "image"
    PDF = "pdf"
    VIDEO = "video"


class ChatType(str, Enum):
    TEAM = "team"
    CUSTOMER = "customer"


class MediaType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    PDF = "pdf"


@dataclass(frozen=True)
class Brand:
    id: str
    name: str


@dataclass(frozen=True)
class User:
    id: str  # auth-provider uid; legacy profiles carry the email here
    email: str
    name: str
    role: UserRole
    brands: Tuple[Brand, ...] | None = None
    profile_picture_url: str | None = None
    customer_ids: Tuple[str, ...] = ()  # an account manager's customers
    account_manager_id: str | None = None
    push_token: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0]


@dataclass(frozen=True)
class OrderItem:
    id: str
    name: str
    quantity: int
    price: Decimal  # negative only for discount items
    product_type: ProductType = ProductType.STICKER

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class OrderAttachment:
    id: str
    url: str
    type: AttachmentType
    name: str


@dataclass(frozen=True)
class Order:
    id: str
    customer_email: str
    customer_uid: str | None
    account_manager_email: str
    brand_id: str
    brand_name: str
    items: Tuple[OrderItem, ...]
    status: OrderStatus
    created_at: datetime
    total_amount: Decimal
    attachments: Tuple[OrderAttachment, ...] = ()


@dataclass(frozen=True)
class ByEmail:
    email: str


@dataclass(frozen=True)
class ByUid:
    uid: str


# orders are dual-keyed while customer references migrate from email to uid
CustomerRef = ByEmail | ByUid


@dataclass(frozen=True)
class ChatMessage:
    id: str
    sender_id: str
    text: str | None
    media_url: str | None
    media_type: MediaType | None
    timestamp: datetime


@dataclass(frozen=True)
class Chat:
    id: str
    participants: Tuple[str, ...]
    last_message: ChatMessage
    type: ChatType
    unread_status: Dict[str, bool] = field(default_factory=dict)
    title: str | None = None

    def has_unread_messages(self, participant: str) -> bool:
        return self.unread_status.get(participant, False)


@dataclass(frozen=True)
class Identity:
    uid: str
    email: str


# ---------------------------
# Document store shapes
# ---------------------------


@dataclass(frozen=True)
class DocumentSnapshot:
    collection: str
    id: str
    data: Dict[str, Any]


@dataclass(frozen=True)
class DocumentChange:
    kind: Literal["added", "modified", "removed"]
    snapshot: DocumentSnapshot


@dataclass(frozen=True)
class ChangeBatch:
    changes: Tuple[DocumentChange, ...]
    documents: Tuple[DocumentSnapshot, ...]  # full current result set, in query order


@dataclass(frozen=True)
class Filter:
    field: str
    op: Literal["==", "!=", "<", "<=", ">", ">=", "array_contains", "in"]
    value: Any
