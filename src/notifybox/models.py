#!/usr/bin/env python3
"""Data models for queue events, users and outgoing notifications."""

from dataclasses import dataclass, field
import json
from typing import Any, Dict, List, Literal, Optional, Union

from notifybox.errors import DecodeError

ProductEventType = Literal["product_created", "product_updated", "product_deleted"]
OrderEventType = Literal["order_placed", "order_updated", "order_deleted"]

USER_FIELDS = ("username", "email", "role")


def decode_body(body: bytes) -> Dict[str, Any]:
    """
    Decode a raw message body as a UTF-8 JSON object.

    Args:
        body: Message body as delivered by the broker

    Returns:
        Decoded JSON object

    Raises:
        DecodeError: If the body is not UTF-8, not JSON, or not a JSON object
    """
    try:
        decoded = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Message body is not valid JSON: {e}") from e

    if not isinstance(decoded, dict):
        raise DecodeError(f"Message body must be a JSON object, got {type(decoded).__name__}")
    return decoded


def _require(data: Dict[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise DecodeError(f"Missing required field '{key}'")
    return data[key]


def _require_list(data: Dict[str, Any], key: str) -> List[Any]:
    value = _require(data, key)
    if not isinstance(value, list):
        raise DecodeError(f"Field '{key}' must be a list")
    return value


@dataclass
class Envelope:
    """The {type, data} wrapper carried by every queue message."""

    type: str
    data: Dict[str, Any]

    @classmethod
    def from_dict(cls, message: Dict[str, Any]) -> "Envelope":
        """
        Create Envelope from a decoded message.

        Args:
            message: Decoded JSON object

        Returns:
            Envelope instance

        Raises:
            DecodeError: If type is not a string or data is not an object
        """
        event_type = message.get("type")
        if not isinstance(event_type, str):
            raise DecodeError("Envelope 'type' must be a string")

        data = message.get("data", {})
        if not isinstance(data, dict):
            raise DecodeError("Envelope 'data' must be an object")

        return cls(type=event_type, data=data)


@dataclass
class User:
    """Projection of a user record held in the user directory."""

    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def from_document(cls, external_id: str, doc: Dict[str, Any]) -> "User":
        """Create User from a stored directory document."""
        return cls(
            id=external_id,
            username=doc.get("username"),
            email=doc.get("email"),
            role=doc.get("role"),
        )


@dataclass
class NotificationRequest:
    """A single email ready to be handed to the email sender. Never persisted."""

    recipient_email: str
    subject: str
    summary_text: str
    html_body: str


@dataclass
class UserCreated:
    """Auth queue: a new account was registered."""

    user_id: str
    event_type: Literal["user_created"] = "user_created"

    @classmethod
    def from_envelope(cls, envelope: Envelope) -> "UserCreated":
        return cls(user_id=str(_require(envelope.data, "userId")))


@dataclass
class ProductEvent:
    """Product queue: a seller's product was created, updated or deleted."""

    event_type: ProductEventType
    title: str
    seller_id: str
    description: Optional[str] = None
    price: Any = None
    quantity: Any = None
    category: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_envelope(cls, envelope: Envelope) -> "ProductEvent":
        """
        Create ProductEvent from an envelope.

        Args:
            envelope: Envelope whose type is one of the product event types

        Returns:
            ProductEvent instance

        Raises:
            DecodeError: If title or seller.id is missing
        """
        data = envelope.data
        seller = _require(data, "seller")
        if not isinstance(seller, dict):
            raise DecodeError("Field 'seller' must be an object")

        return cls(
            event_type=envelope.type,  # type: ignore[arg-type]
            title=_require(data, "title"),
            seller_id=str(_require(seller, "id")),
            description=data.get("description"),
            price=data.get("price"),
            quantity=data.get("quantity"),
            category=data.get("category"),
            created_at=data.get("createdAt"),
        )


@dataclass
class OrderLine:
    """One line item of an order, assembled from the parallel arrays."""

    index: int
    seller_id: str
    product_id: str
    title: str
    quantity: Any
    remaining_quantity: Any = None


@dataclass
class OrderEvent:
    """Order queue: an order was placed, updated or cancelled."""

    event_type: OrderEventType
    user_id: str
    seller_ids: List[str]
    product_ids: List[str]
    titles: List[str]
    quantities: List[Any]
    remaining_quantities: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_envelope(cls, envelope: Envelope) -> "OrderEvent":
        """
        Create OrderEvent from an envelope.

        Args:
            envelope: Envelope whose type is one of the order event types

        Returns:
            OrderEvent instance

        Raises:
            DecodeError: If a field is missing or the parallel arrays differ in length
        """
        data = envelope.data
        seller_ids = [str(s) for s in _require_list(data, "sellerIds")]
        product_ids = [str(p) for p in _require_list(data, "productIds")]
        titles = _require_list(data, "titles")
        quantities = _require_list(data, "quantities")

        lengths = {len(seller_ids), len(product_ids), len(titles), len(quantities)}
        if len(lengths) != 1:
            raise DecodeError(
                "sellerIds, productIds, titles and quantities must have the same length"
            )

        remaining = data.get("remainingQuantities") or []
        if not isinstance(remaining, list):
            raise DecodeError("Field 'remainingQuantities' must be a list")

        return cls(
            event_type=envelope.type,  # type: ignore[arg-type]
            user_id=str(_require(data, "userId")),
            seller_ids=seller_ids,
            product_ids=product_ids,
            titles=titles,
            quantities=quantities,
            remaining_quantities=[r for r in remaining if isinstance(r, dict)],
        )

    def remaining_for(self, product_id: str) -> Any:
        """Return the remaining stock of the first record matching product_id, or None."""
        for record in self.remaining_quantities:
            if str(record.get("productId")) == product_id:
                return record.get("remainingQuantity")
        return None

    def line_items(self) -> List[OrderLine]:
        return [
            OrderLine(
                index=i,
                seller_id=self.seller_ids[i],
                product_id=self.product_ids[i],
                title=self.titles[i],
                quantity=self.quantities[i],
                remaining_quantity=self.remaining_for(self.product_ids[i]),
            )
            for i in range(len(self.seller_ids))
        ]


@dataclass
class UserSync:
    """User sync queue: a full or partial user projection to upsert."""

    id: str
    fields: Dict[str, Any]
    event_type: Literal["user_data_sync"] = "user_data_sync"

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "UserSync":
        """
        Create UserSync from a decoded message.

        Accepts either a bare projection or one wrapped in a {type, data} envelope.
        Only the fields present in the message are carried.

        Raises:
            DecodeError: If id is missing
        """
        data = message
        if isinstance(message.get("data"), dict) and "type" in message:
            data = message["data"]

        return cls(
            id=str(_require(data, "id")),
            fields={key: data[key] for key in USER_FIELDS if key in data},
        )


Event = Union[UserCreated, ProductEvent, OrderEvent, UserSync]
