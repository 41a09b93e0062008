#!/usr/bin/env python3
"""Turn events and looked-up users into ready-to-send notifications.

Rendering is pure: the Jinja2 environment caches compiled templates and
every function here only builds strings.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from notifybox.config import ORDER_ACTIONS, SUPPORT_EMAIL
from notifybox.models import NotificationRequest, OrderEvent, OrderLine, ProductEvent, User

UNKNOWN = "Unknown"
TEMPLATE_DIR = Path(__file__).parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "xml", "j2"]),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)

PRODUCT_COPY: Dict[str, Dict[str, str]] = {
    "product_created": {
        "template": "product_created.html.j2",
        "subject": "Product Created Successfully",
        "summary": 'Your product "{title}" has been successfully created!',
    },
    "product_updated": {
        "template": "product_updated.html.j2",
        "subject": "Product Updated Successfully",
        "summary": 'Your product "{title}" has been successfully updated!',
    },
    "product_deleted": {
        "template": "product_deleted.html.j2",
        "subject": "Product Deleted Successfully",
        "summary": 'Your product "{title}" has been successfully deleted.',
    },
}

SELLER_ORDER_COPY: Dict[str, Dict[str, str]] = {
    "order_placed": {
        "subject": "New Order Received",
        "summary": 'A new order has been placed for "{title}"',
        "intro": "A new order has been placed for your product:",
        "quantity_label": "Quantity Ordered",
        "closing": "Please prepare the order promptly. Thank you!",
    },
    "order_updated": {
        "subject": "Order Updated",
        "summary": 'The order for "{title}" has been updated',
        "intro": "The order for your product has been updated:",
        "quantity_label": "Updated Quantity",
        "closing": "Keep track of your stock levels and fulfill this updated order. Thank you!",
    },
    "order_deleted": {
        "subject": "Order Cancelled",
        "summary": 'The order for "{title}" has been cancelled.',
        "intro": "An order for your product has been cancelled:",
        "quantity_label": "Cancelled Quantity",
        "closing": "We regret the cancellation but trust you'll continue providing great service!",
    },
}

BUYER_ORDER_COPY: Dict[str, Dict[str, str]] = {
    "order_placed": {
        "subject": "Order Placed",
        "summary": 'Your order for "{titles}" has been placed successfully.',
        "intro": "Your order has been successfully placed:",
        "quantity_label": "Quantity",
        "closing": "Thank you for shopping with us!",
    },
    "order_updated": {
        "subject": "Order Updated",
        "summary": 'Your order for "{titles}" has been updated.',
        "intro": "Your order has been updated:",
        "quantity_label": "Updated Quantity",
        "closing": "Thank you for your continued support!",
    },
    "order_deleted": {
        "subject": "Order Cancelled",
        "summary": 'Your order for "{titles}" has been cancelled.',
        "intro": "Your order has been cancelled:",
        "quantity_label": "Cancelled Quantity",
        "closing": "We're sorry for any inconvenience caused.",
    },
}


def format_date(value: Any) -> str:
    """Format an ISO-8601 timestamp as a calendar date, 'Unknown' when absent."""
    if not value:
        return UNKNOWN
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).strftime("%Y-%m-%d")
    except ValueError:
        return str(value)


def format_stock(value: Any) -> str:
    return UNKNOWN if value is None else str(value)


def format_price(value: Any) -> str:
    return UNKNOWN if value is None else f"${value}"


_env.filters["or_unknown"] = format_stock
_env.filters["price"] = format_price


def _render(template_name: str, **context: Any) -> str:
    return _env.get_template(template_name).render(**context)


def render_welcome(user: User) -> NotificationRequest:
    """Welcome email for a freshly created account."""
    return NotificationRequest(
        recipient_email=user.email or "",
        subject="Welcome to Our Service",
        summary_text="Your account has been successfully created.",
        html_body=_render("welcome.html.j2", user=user),
    )


def render_product_notification(event: ProductEvent, seller: User) -> NotificationRequest:
    """
    Email telling a seller about a product lifecycle transition.

    Args:
        event: Product created/updated/deleted event
        seller: Seller looked up by event.seller_id

    Returns:
        NotificationRequest addressed to the seller

    Raises:
        KeyError: If event.event_type is not a product event type
    """
    copy = PRODUCT_COPY[event.event_type]
    return NotificationRequest(
        recipient_email=seller.email or "",
        subject=copy["subject"],
        summary_text=copy["summary"].format(title=event.title),
        html_body=_render(
            copy["template"],
            seller=seller,
            product=event,
            created_on=format_date(event.created_at),
            support_email=SUPPORT_EMAIL,
        ),
    )


def render_seller_order_notification(event_type: str, line: OrderLine, seller: User) -> NotificationRequest:
    """Email telling one seller about a single line item of an order."""
    copy = SELLER_ORDER_COPY[event_type]
    return NotificationRequest(
        recipient_email=seller.email or "",
        subject=copy["subject"],
        summary_text=copy["summary"].format(title=line.title),
        html_body=_render(
            "order_seller.html.j2",
            seller=seller,
            line=line,
            remaining_stock=format_stock(line.remaining_quantity),
            action=ORDER_ACTIONS[event_type],
            copy=copy,
        ),
    )


def render_buyer_order_summary(event: OrderEvent, buyer: User) -> NotificationRequest:
    """Aggregate email listing every line item of the order for the buyer."""
    copy = BUYER_ORDER_COPY[event.event_type]
    return NotificationRequest(
        recipient_email=buyer.email or "",
        subject=copy["subject"],
        summary_text=copy["summary"].format(titles=", ".join(str(t) for t in event.titles)),
        html_body=_render(
            "order_buyer.html.j2",
            buyer=buyer,
            lines=event.line_items(),
            action=ORDER_ACTIONS[event.event_type],
            copy=copy,
        ),
    )
