"""Tests for event handlers."""

import asyncio

import psycopg2
import pytest

from notifybox.directory import UserDirectory
from notifybox.errors import DeliveryError, SellerFanOutError, StoreError
from notifybox.handlers import (
    HandlerContext,
    handle_order_event,
    handle_product_event,
    handle_user_created,
    handle_user_sync,
    notify_sellers,
)
from notifybox.models import Envelope, OrderEvent, ProductEvent, UserCreated, UserSync


def recipients(sender):
    """Recipient addresses of every send, in call order."""
    return [call.args[0] for call in sender.send.call_args_list]


def order_from(envelope, event_type=None):
    if event_type:
        envelope["type"] = event_type
    return OrderEvent.from_envelope(Envelope.from_dict(envelope))


class TestUserCreated:
    """Tests for handle_user_created."""

    @pytest.mark.asyncio
    async def test_sends_welcome_email(self, context, sender):
        """Test a found user receives one welcome email."""
        await handle_user_created(UserCreated(user_id="b1"), context)

        sender.send.assert_awaited_once()
        to, subject, _, _ = sender.send.call_args.args
        assert to == "bob@example.com"
        assert subject == "Welcome to Our Service"

    @pytest.mark.asyncio
    async def test_unknown_user_is_skipped(self, context, sender):
        """Test a lookup miss sends nothing and does not fail."""
        await handle_user_created(UserCreated(user_id="missing"), context)
        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_error_on_lookup_is_skipped(self, context, directory, sender, mocker):
        """Test a directory read failure is treated as a miss."""
        mocker.patch.object(directory, "find_by_external_id", side_effect=StoreError("down"))

        await handle_user_created(UserCreated(user_id="b1"), context)

        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreachable_directory_is_skipped(self, sender, mock_pool):
        """Test a directory that cannot hand out a connection is treated as a miss."""
        mock_pool.getconn.side_effect = psycopg2.OperationalError("could not connect")
        ctx = HandlerContext(directory=UserDirectory("host=localhost"), sender=sender)

        await handle_user_created(UserCreated(user_id="b1"), ctx)

        sender.send.assert_not_awaited()


class TestProductEvent:
    """Tests for handle_product_event."""

    @pytest.mark.asyncio
    async def test_product_created_emails_seller_once(self, context, sender, product_created_envelope):
        """Test product_created sends exactly one email with title, price and quantity."""
        event = ProductEvent.from_envelope(Envelope.from_dict(product_created_envelope))

        await handle_product_event(event, context)

        sender.send.assert_awaited_once()
        to, subject, text, html = sender.send.call_args.args
        assert to == "sally@example.com"
        assert "Desk Lamp" in text
        assert "49.99" in html
        assert "12" in html

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event_type", ["product_updated", "product_deleted"])
    async def test_other_product_events_email_seller(self, context, sender, product_created_envelope, event_type):
        """Test update and delete events also email the seller."""
        product_created_envelope["type"] = event_type
        event = ProductEvent.from_envelope(Envelope.from_dict(product_created_envelope))

        await handle_product_event(event, context)

        assert recipients(sender) == ["sally@example.com"]

    @pytest.mark.asyncio
    async def test_unknown_seller_is_skipped(self, context, sender):
        """Test a seller lookup miss sends nothing."""
        event = ProductEvent(event_type="product_created", title="Lamp", seller_id="nobody")

        await handle_product_event(event, context)

        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delivery_error_propagates(self, context, sender, product_created_envelope):
        """Test a failed send fails the handler."""
        sender.send.side_effect = DeliveryError("smtp down")
        event = ProductEvent.from_envelope(Envelope.from_dict(product_created_envelope))

        with pytest.raises(DeliveryError):
            await handle_product_event(event, context)


class TestOrderEvent:
    """Tests for handle_order_event and the seller fan-out."""

    @pytest.mark.asyncio
    async def test_order_placed_emails_every_seller_then_buyer(self, context, sender, order_envelope):
        """Test n line items yield n seller emails followed by one buyer email."""
        await handle_order_event(order_from(order_envelope), context)

        sent = recipients(sender)
        assert sorted(sent[:2]) == ["sally@example.com", "sam@example.com"]
        assert sent[2] == "bob@example.com"
        assert sender.send.await_count == 3

    @pytest.mark.asyncio
    async def test_remaining_stock_per_line_item(self, context, sender, order_envelope):
        """Test item 0 shows Unknown stock and item 1 shows 5."""
        await handle_order_event(order_from(order_envelope), context)

        html_by_recipient = {call.args[0]: call.args[3] for call in sender.send.call_args_list}
        assert "Remaining Stock:</b> Unknown" in html_by_recipient["sally@example.com"]
        assert "Remaining Stock:</b> 5" in html_by_recipient["sam@example.com"]

    @pytest.mark.asyncio
    async def test_duplicate_seller_is_looked_up_and_emailed_per_item(self, context, directory, sender, order_envelope):
        """Test a seller on two line items is looked up and emailed twice."""
        order_envelope["data"]["sellerIds"] = ["s1", "s1"]

        await handle_order_event(order_from(order_envelope), context)

        assert directory.lookups.count("s1") == 2
        assert recipients(sender).count("sally@example.com") == 2

    @pytest.mark.asyncio
    async def test_order_deleted_with_missing_seller(self, context, directory, sender, order_envelope):
        """Test a missing seller is skipped and the buyer still gets a cancellation listing both items."""
        del directory.docs["s2"]

        await handle_order_event(order_from(order_envelope, "order_deleted"), context)

        assert recipients(sender) == ["sally@example.com", "bob@example.com"]
        _, subject, text, html = sender.send.call_args_list[-1].args
        assert subject == "Order Cancelled"
        assert "Desk Lamp" in html and "Bookshelf" in html
        assert "cancelled" in text

    @pytest.mark.asyncio
    async def test_missing_buyer_skips_summary(self, context, directory, sender, order_envelope):
        """Test sellers are still emailed when the buyer is unknown."""
        del directory.docs["b1"]

        await handle_order_event(order_from(order_envelope), context)

        assert sorted(recipients(sender)) == ["sally@example.com", "sam@example.com"]

    @pytest.mark.asyncio
    async def test_buyer_lookup_store_error_skips_summary(self, context, directory, sender, order_envelope, mocker):
        """Test a failed buyer lookup still notifies sellers and skips the buyer."""
        find = directory.find_by_external_id

        def find_or_fail(external_id):
            if external_id == "b1":
                raise StoreError("connection pool exhausted")
            return find(external_id)

        mocker.patch.object(directory, "find_by_external_id", side_effect=find_or_fail)

        await handle_order_event(order_from(order_envelope), context)

        assert sorted(recipients(sender)) == ["sally@example.com", "sam@example.com"]

    @pytest.mark.asyncio
    async def test_failed_seller_send_fails_event_and_skips_buyer(self, context, sender, order_envelope):
        """Test one failing seller send fails the whole event and the buyer is not emailed."""

        async def send(to, subject, text, html):
            if to == "sam@example.com":
                raise DeliveryError("mailbox unavailable")

        sender.send.side_effect = send

        with pytest.raises(SellerFanOutError) as exc_info:
            await handle_order_event(order_from(order_envelope), context)

        assert "bob@example.com" not in recipients(sender)
        outcomes = exc_info.value.outcomes
        assert [o.sent for o in outcomes] == [True, False]
        assert isinstance(outcomes[1].error, DeliveryError)
        assert [o.seller_id for o in exc_info.value.failed] == ["s2"]
        assert isinstance(exc_info.value, DeliveryError)

    @pytest.mark.asyncio
    async def test_buyer_lookup_runs_alongside_sellers(self, context, directory, sender, order_envelope):
        """Test the buyer lookup starts before the seller sends finish."""
        release = asyncio.Event()
        started = []

        async def slow_send(to, subject, text, html):
            started.append(to)
            await release.wait()

        sender.send.side_effect = slow_send
        task = asyncio.create_task(handle_order_event(order_from(order_envelope), context))

        for _ in range(200):
            if "b1" in directory.lookups:
                break
            await asyncio.sleep(0.01)
        assert "b1" in directory.lookups
        assert not task.done()

        release.set()
        await task
        assert started[-1] == "bob@example.com"

    @pytest.mark.asyncio
    async def test_notify_sellers_reports_skipped_lookups(self, context, directory, order_envelope):
        """Test a missing seller yields an outcome that is neither sent nor failed."""
        del directory.docs["s1"]

        outcomes = await notify_sellers(order_from(order_envelope), context)

        assert [(o.seller_id, o.sent, o.error) for o in outcomes] == [("s1", False, None), ("s2", True, None)]


class TestUserSync:
    """Tests for handle_user_sync."""

    @pytest.mark.asyncio
    async def test_upsert_inserts_new_user(self, context, directory):
        """Test a sync for an unknown id creates the record."""
        await handle_user_sync(UserSync(id="u1", fields={"username": "a", "email": "a@x", "role": "seller"}), context)
        assert directory.docs["u1"] == {"username": "a", "email": "a@x", "role": "seller"}

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, context, directory):
        """Test applying the same sync twice leaves one identical record."""
        event = UserSync.from_message({"id": "u1", "username": "a", "email": "a@x", "role": "seller"})

        await handle_user_sync(event, context)
        await handle_user_sync(event, context)

        assert len(directory.upserts) == 2
        assert len(directory.docs) == 4
        assert directory.docs["u1"] == {"username": "a", "email": "a@x", "role": "seller"}

    @pytest.mark.asyncio
    async def test_partial_sync_leaves_other_fields(self, context, directory):
        """Test fields absent from the projection are not cleared."""
        await handle_user_sync(UserSync(id="s1", fields={"email": "new@example.com"}), context)

        assert directory.docs["s1"] == {"username": "sally", "email": "new@example.com", "role": "seller"}

    @pytest.mark.asyncio
    async def test_store_error_propagates(self, context, directory, mocker):
        """Test an upsert failure fails the handler."""
        mocker.patch.object(directory, "upsert_by_external_id", side_effect=StoreError("down"))

        with pytest.raises(StoreError):
            await handle_user_sync(UserSync(id="u1", fields={}), context)
