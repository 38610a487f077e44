# convert between dataclass models and schemaless store documents
"""
Decoding is total and defensive: a document missing a mandatory field
decodes to None, every optional field degrades to a default. Encoding always
emits the full set of core fields so a write overwrites idempotently.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from db.models import (
    AttachmentType,
    Brand,
    Chat,
    ChatMessage,
    ChatType,
    DocumentSnapshot,
    MediaType,
    Order,
    OrderAttachment,
    OrderItem,
    OrderStatus,
    ProductType,
    User,
    UserRole,
)
from utils.logger import get_logger

_logger = get_logger(__name__)

E = TypeVar("E", bound=Enum)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------
# Field extraction
# ---------------------------


def _str(val, default: str = "") -> str:
    return val if isinstance(val, str) else default


def _opt_str(val) -> Optional[str]:
    return val if isinstance(val, str) and val else None


def _int(val, default: int = 0) -> int:
    if isinstance(val, bool):
        return default
    if isinstance(val, int):
        return val
    if isinstance(val, float) and val.is_integer():
        return int(val)
    return default


def _decimal(val, default: Decimal = Decimal("0")) -> Decimal:
    if isinstance(val, bool) or val is None:
        return default
    try:
        amount = Decimal(str(val))
    except (InvalidOperation, ValueError):
        return default
    return amount if amount.is_finite() else default


def _datetime(val) -> Optional[datetime]:
    if isinstance(val, datetime):
        return val if val.tzinfo else val.replace(tzinfo=timezone.utc)
    return None


def _enum(enum_cls: Type[E], val, default: Optional[E]) -> Optional[E]:
    try:
        return enum_cls(val)
    except ValueError:
        return default


def _str_list(val) -> Optional[List[str]]:
    if not isinstance(val, list) or not all(isinstance(v, str) for v in val):
        return None
    return list(val)


def _bool_map(val) -> Optional[Dict[str, bool]]:
    if not isinstance(val, dict):
        return None
    if not all(isinstance(k, str) and isinstance(v, bool) for k, v in val.items()):
        return None
    return dict(val)


def _dict_list(val) -> List[Dict[str, Any]]:
    if not isinstance(val, list):
        return []
    return [v for v in val if isinstance(v, dict)]


def encode_money(val: Decimal) -> str:
    # stored as text so the amount comes back digit for digit
    return str(val)


# ---------------------------
# Users
# ---------------------------


def decode_brand(data: Dict[str, Any]) -> Optional[Brand]:
    brand_id = _opt_str(data.get("id"))
    name = data.get("name")
    if brand_id is None or not isinstance(name, str):
        return None
    return Brand(id=brand_id, name=name)


def encode_brand(brand: Brand) -> Dict[str, Any]:
    return {"id": brand.id, "name": brand.name}


def decode_user(snapshot: DocumentSnapshot) -> Optional[User]:
    data = snapshot.data
    email = _opt_str(data.get("email"))
    if email is None:
        return None
    brands = None
    if isinstance(data.get("brands"), list):
        brands = tuple(
            b for b in (decode_brand(d) for d in _dict_list(data["brands"])) if b
        )
    return User(
        id=_str(data.get("id")) or snapshot.id,
        email=email,
        name=_str(data.get("name")),
        role=_enum(UserRole, data.get("role"), UserRole.CUSTOMER),
        brands=brands,
        profile_picture_url=_opt_str(data.get("profilePictureUrl")),
        customer_ids=tuple(_str_list(data.get("customerIds")) or ()),
        account_manager_id=_opt_str(data.get("accountManagerId")),
        push_token=_opt_str(data.get("fcmToken")),
    )


def encode_user(user: User) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
        "customerIds": list(user.customer_ids),
    }
    if user.brands is not None:
        doc["brands"] = [encode_brand(b) for b in user.brands]
    if user.profile_picture_url:
        doc["profilePictureUrl"] = user.profile_picture_url
    if user.account_manager_id:
        doc["accountManagerId"] = user.account_manager_id
    if user.push_token:
        doc["fcmToken"] = user.push_token
    return doc


# ---------------------------
# Orders
# ---------------------------


def decode_order_item(data: Dict[str, Any]) -> OrderItem:
    return OrderItem(
        id=_str(data.get("id")),
        name=_str(data.get("name")),
        quantity=_int(data.get("quantity")),
        price=_decimal(data.get("price")),
        product_type=_enum(ProductType, data.get("productType"), ProductType.STICKER),
    )


def encode_order_item(item: OrderItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "name": item.name,
        "quantity": item.quantity,
        "price": encode_money(item.price),
        "productType": item.product_type.value,
    }


def decode_attachment(data: Dict[str, Any]) -> Optional[OrderAttachment]:
    att_id = _opt_str(data.get("id"))
    url = _opt_str(data.get("url"))
    att_type = _enum(AttachmentType, data.get("type"), None)
    name = data.get("name")
    if att_id is None or url is None or att_type is None or not isinstance(name, str):
        return None
    return OrderAttachment(id=att_id, url=url, type=att_type, name=name)


def encode_attachment(attachment: OrderAttachment) -> Dict[str, Any]:
    return {
        "id": attachment.id,
        "url": attachment.url,
        "type": attachment.type.value,
        "name": attachment.name,
    }


def decode_order(snapshot: DocumentSnapshot) -> Optional[Order]:
    data = snapshot.data
    if not snapshot.id:
        return None
    attachments = tuple(
        a for a in (decode_attachment(d) for d in _dict_list(data.get("attachments"))) if a
    )
    return Order(
        id=snapshot.id,
        customer_email=_str(data.get("customerEmail")),
        customer_uid=_opt_str(data.get("customerUid")),
        account_manager_email=_str(data.get("accountManagerEmail")),
        brand_id=_str(data.get("brandId")),
        brand_name=_str(data.get("brandName")),
        items=tuple(decode_order_item(d) for d in _dict_list(data.get("items"))),
        status=_enum(OrderStatus, data.get("status"), OrderStatus.PENDING),
        created_at=_datetime(data.get("createdAt")) or utcnow(),
        total_amount=_decimal(data.get("totalAmount")),
        attachments=attachments,
    )


def encode_order(order: Order) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "customerEmail": order.customer_email,
        "accountManagerEmail": order.account_manager_email,
        "brandId": order.brand_id,
        "brandName": order.brand_name,
        "items": [encode_order_item(i) for i in order.items],
        "status": order.status.value,
        "createdAt": order.created_at,
        "totalAmount": encode_money(order.total_amount),
        "attachments": [encode_attachment(a) for a in order.attachments],
    }
    if order.customer_uid:
        doc["customerUid"] = order.customer_uid
    return doc


# ---------------------------
# Chats
# ---------------------------


def decode_message_data(data: Dict[str, Any], fallback_id: str = "") -> Optional[ChatMessage]:
    sender_id = _opt_str(data.get("senderId"))
    timestamp = _datetime(data.get("timestamp"))
    if sender_id is None or timestamp is None:
        return None
    return ChatMessage(
        id=_str(data.get("id")) or fallback_id,
        sender_id=sender_id,
        text=data.get("text") if isinstance(data.get("text"), str) else None,
        media_url=_opt_str(data.get("mediaUrl")),
        media_type=_enum(MediaType, data.get("mediaType"), None),
        timestamp=timestamp,
    )


def decode_message(snapshot: DocumentSnapshot) -> Optional[ChatMessage]:
    return decode_message_data(snapshot.data, fallback_id=snapshot.id)


def encode_message(message: ChatMessage) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "id": message.id,
        "senderId": message.sender_id,
        "timestamp": message.timestamp,
    }
    if message.text is not None:
        doc["text"] = message.text
    if message.media_url:
        doc["mediaUrl"] = message.media_url
    if message.media_type is not None:
        doc["mediaType"] = message.media_type.value
    return doc


def decode_chat(snapshot: DocumentSnapshot) -> Optional[Chat]:
    data = snapshot.data
    participants = _str_list(data.get("participants"))
    last_message_data = data.get("lastMessage")
    chat_type = _enum(ChatType, data.get("type"), None)
    unread_status = _bool_map(data.get("unreadStatus"))
    if (
        participants is None
        or not isinstance(last_message_data, dict)
        or chat_type is None
        or unread_status is None
    ):
        return None
    last_message = decode_message_data(last_message_data)
    if last_message is None or not last_message.id:
        return None
    return Chat(
        id=snapshot.id,
        participants=tuple(participants),
        last_message=last_message,
        type=chat_type,
        unread_status=unread_status,
        title=_opt_str(data.get("title")),
    )


def encode_chat(chat: Chat) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "participants": list(chat.participants),
        "lastMessage": encode_message(chat.last_message),
        "lastMessageTimestamp": chat.last_message.timestamp,
        "type": chat.type.value,
        "unreadStatus": dict(chat.unread_status),
    }
    if chat.title is not None:
        doc["title"] = chat.title
    return doc


def decode_all(snapshots, decoder) -> list:
    """Decode a bulk result, dropping and logging records that do not fit."""
    decoded = []
    for snap in snapshots:
        entity = decoder(snap)
        if entity is None:
            _logger.warning(
                f"Skipping {snap.collection}/{snap.id}: document could not be decoded."
            )
            continue
        decoded.append(entity)
    return decoded
