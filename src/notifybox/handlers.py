#!/usr/bin/env python3
"""Event handlers: one coroutine per business domain."""

import asyncio
from dataclasses import dataclass
from typing import List, Optional

from loguru import logger

from notifybox.directory import UserDirectory, fetch_user, upsert_user
from notifybox.email_sender import EmailSender, deliver
from notifybox.errors import SellerFanOutError
from notifybox.models import OrderEvent, OrderLine, ProductEvent, UserCreated, UserSync
from notifybox.renderer import (
    render_buyer_order_summary,
    render_product_notification,
    render_seller_order_notification,
    render_welcome,
)


@dataclass
class HandlerContext:
    """Collaborators shared by every handler invocation."""

    directory: UserDirectory
    sender: EmailSender


@dataclass
class SellerOutcome:
    """Result of notifying the seller of one order line item."""

    index: int
    seller_id: str
    product_id: str
    sent: bool = False
    error: Optional[BaseException] = None


async def handle_user_created(event: UserCreated, ctx: HandlerContext) -> None:
    """Send a welcome email to a newly registered user."""
    user = await fetch_user(ctx.directory, event.user_id)
    if user is None:
        logger.info("Skipping welcome email, user {} not found", event.user_id)
        return

    await deliver(ctx.sender, render_welcome(user))
    logger.info("Welcome email sent for user {}", event.user_id)


async def handle_product_event(event: ProductEvent, ctx: HandlerContext) -> None:
    """Tell the seller about a product being created, updated or deleted."""
    seller = await fetch_user(ctx.directory, event.seller_id)
    if seller is None:
        logger.info("Skipping {} email, seller {} not found", event.event_type, event.seller_id)
        return

    await deliver(ctx.sender, render_product_notification(event, seller))
    logger.info("{} email sent to seller {}", event.event_type, event.seller_id)


async def _notify_seller(event: OrderEvent, line: OrderLine, ctx: HandlerContext) -> SellerOutcome:
    """Look up one line item's seller and send them the per-item email."""
    outcome = SellerOutcome(index=line.index, seller_id=line.seller_id, product_id=line.product_id)

    seller = await fetch_user(ctx.directory, line.seller_id)
    if seller is None:
        logger.info("Skipping seller {} for line item {}, not found", line.seller_id, line.index)
        return outcome

    await deliver(ctx.sender, render_seller_order_notification(event.event_type, line, seller))
    outcome.sent = True
    return outcome


async def notify_sellers(event: OrderEvent, ctx: HandlerContext) -> List[SellerOutcome]:
    """
    Notify every line item's seller concurrently and capture each outcome.

    Sellers are looked up once per line item, so a seller appearing on
    several items is looked up and emailed once per item.

    Args:
        event: Order event
        ctx: Handler collaborators

    Returns:
        One SellerOutcome per line item, in line item order
    """
    lines = event.line_items()
    results = await asyncio.gather(
        *(_notify_seller(event, line, ctx) for line in lines),
        return_exceptions=True,
    )

    outcomes: List[SellerOutcome] = []
    for line, result in zip(lines, results):
        if isinstance(result, SellerOutcome):
            outcomes.append(result)
            continue
        if not isinstance(result, Exception):
            raise result
        outcomes.append(
            SellerOutcome(index=line.index, seller_id=line.seller_id, product_id=line.product_id, error=result)
        )
    return outcomes


async def handle_order_event(event: OrderEvent, ctx: HandlerContext) -> None:
    """
    Notify every seller of their line item, then send the buyer a summary.

    The buyer lookup starts alongside the seller fan-out. The buyer email is
    only sent once all seller sends succeeded; any failed seller send fails
    the whole event with SellerFanOutError, and seller emails already sent
    are not rolled back.

    Raises:
        SellerFanOutError: If at least one seller notification failed
        DeliveryError: If the buyer email could not be sent
    """
    buyer_lookup = asyncio.create_task(fetch_user(ctx.directory, event.user_id))

    try:
        outcomes = await notify_sellers(event, ctx)
    except BaseException:
        buyer_lookup.cancel()
        raise

    failed = [o for o in outcomes if o.error is not None]
    if failed:
        await buyer_lookup
        for outcome in failed:
            logger.error(
                "Seller {} notification failed for line item {} ({}): {}",
                outcome.seller_id,
                outcome.index,
                outcome.product_id,
                outcome.error,
            )
        logger.warning(
            "Skipping buyer {} summary for {}: {} of {} seller email(s) sent before failure",
            event.user_id,
            event.event_type,
            sum(1 for o in outcomes if o.sent),
            len(outcomes),
        )
        raise SellerFanOutError(event.event_type, outcomes)

    buyer = await buyer_lookup
    if buyer is None:
        logger.info("Skipping buyer summary for {}, buyer {} not found", event.event_type, event.user_id)
        return

    await deliver(ctx.sender, render_buyer_order_summary(event, buyer))
    logger.info(
        "{} notifications sent: {} seller email(s), buyer {}",
        event.event_type,
        sum(1 for o in outcomes if o.sent),
        event.user_id,
    )


async def handle_user_sync(event: UserSync, ctx: HandlerContext) -> None:
    """Upsert the user projection; store failures propagate."""
    await upsert_user(ctx.directory, event.id, event.fields)
    logger.info("User data synced: {}", event.id)
