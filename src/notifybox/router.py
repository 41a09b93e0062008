#!/usr/bin/env python3
"""Event router: decode a queue message and dispatch it to its handler."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from loguru import logger

from notifybox.config import (
    AUTH_EVENTS_QUEUE,
    ORDER_EVENTS_QUEUE,
    PRODUCT_EVENTS_QUEUE,
    USER_SYNC_QUEUE,
)
from notifybox.errors import DecodeError, UnknownEventType
from notifybox.handlers import (
    HandlerContext,
    handle_order_event,
    handle_product_event,
    handle_user_created,
    handle_user_sync,
)
from notifybox.models import (
    Envelope,
    Event,
    OrderEvent,
    ProductEvent,
    UserCreated,
    UserSync,
    decode_body,
)

# Routes keyed by this type accept every message on a single-purpose queue
ANY_TYPE = "*"

Decoder = Callable[[Dict[str, Any]], Event]
Handler = Callable[[Any, HandlerContext], Awaitable[None]]


@dataclass
class Route:
    """How to decode one event variant and which handler runs it."""

    decode: Decoder
    handle: Handler


def _enveloped(factory: Callable[[Envelope], Event]) -> Decoder:
    def decode(message: Dict[str, Any]) -> Event:
        return factory(Envelope.from_dict(message))

    return decode


# Dispatch table: queue name -> event type -> route
ROUTES: Dict[str, Dict[str, Route]] = {
    AUTH_EVENTS_QUEUE: {
        "user_created": Route(_enveloped(UserCreated.from_envelope), handle_user_created),
    },
    PRODUCT_EVENTS_QUEUE: {
        event_type: Route(_enveloped(ProductEvent.from_envelope), handle_product_event)
        for event_type in ("product_created", "product_updated", "product_deleted")
    },
    ORDER_EVENTS_QUEUE: {
        event_type: Route(_enveloped(OrderEvent.from_envelope), handle_order_event)
        for event_type in ("order_placed", "order_updated", "order_deleted")
    },
    USER_SYNC_QUEUE: {
        ANY_TYPE: Route(UserSync.from_message, handle_user_sync),
    },
}


class EventRouter:
    """Maps a queue name to its decoder and per-type handlers."""

    def __init__(self, context: HandlerContext, routes: Optional[Dict[str, Dict[str, Route]]] = None) -> None:
        """
        Initialize EventRouter.

        Args:
            context: Collaborators passed to every handler
            routes: Dispatch table (defaults to ROUTES)
        """
        self.context: HandlerContext = context
        self.routes: Dict[str, Dict[str, Route]] = routes or ROUTES

    @property
    def queues(self) -> Tuple[str, ...]:
        return tuple(self.routes)

    def resolve(self, queue: str, body: bytes) -> Tuple[Route, Event]:
        """
        Decode a message body and pick its route.

        Args:
            queue: Queue the message was delivered on
            body: Raw message body

        Returns:
            Tuple of (route, decoded event)

        Raises:
            KeyError: If the queue has no routes
            DecodeError: If the body is malformed
            UnknownEventType: If the queue has no route for the event type
        """
        table = self.routes[queue]
        message = decode_body(body)

        if ANY_TYPE in table:
            route = table[ANY_TYPE]
        else:
            event_type = message.get("type")
            if not isinstance(event_type, str):
                raise DecodeError("Envelope 'type' must be a string")
            found = table.get(event_type)
            if found is None:
                raise UnknownEventType(queue, event_type)
            route = found

        return route, route.decode(message)

    async def dispatch(self, queue: str, body: bytes) -> bool:
        """
        Decode and handle one message.

        Args:
            queue: Queue the message was delivered on
            body: Raw message body

        Returns:
            True if a handler ran, False if the event type was unknown and ignored

        Raises:
            DecodeError: If the body is malformed
            DeliveryError: If an email could not be sent
            StoreError: If the user directory upsert failed
        """
        try:
            route, event = self.resolve(queue, body)
        except UnknownEventType as e:
            logger.warning("Unhandled event type {!r} on {}", e.event_type, queue)
            return False

        await route.handle(event, self.context)
        return True
