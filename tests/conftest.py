"""Shared fixtures for tests."""

import json
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from notifybox.handlers import HandlerContext
from notifybox.models import USER_FIELDS, User


class InMemoryDirectory:
    """User directory double with the same upsert-merge semantics as the SQL."""

    def __init__(self, users: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in (users or {}).items()}
        self.lookups: list = []
        self.upserts: list = []

    def find_by_external_id(self, external_id: str) -> Optional[User]:
        self.lookups.append(external_id)
        doc = self.docs.get(external_id)
        if doc is None:
            return None
        return User.from_document(external_id, doc)

    def upsert_by_external_id(self, external_id: str, fields: Dict[str, Any]) -> None:
        self.upserts.append((external_id, dict(fields)))
        assert set(fields) <= set(USER_FIELDS)
        self.docs.setdefault(external_id, {}).update(fields)

    def is_connected(self) -> bool:
        return True


@pytest.fixture
def users() -> Dict[str, Dict[str, Any]]:
    """Directory contents: one buyer and two sellers."""
    return {
        "b1": {"username": "bob", "email": "bob@example.com", "role": "buyer"},
        "s1": {"username": "sally", "email": "sally@example.com", "role": "seller"},
        "s2": {"username": "sam", "email": "sam@example.com", "role": "seller"},
    }


@pytest.fixture
def directory(users) -> InMemoryDirectory:
    """In-memory user directory seeded with users."""
    return InMemoryDirectory(users)


@pytest.fixture
def sender() -> Mock:
    """Email sender recording every send."""
    mock_sender = Mock()
    mock_sender.send = AsyncMock(return_value=None)
    return mock_sender


@pytest.fixture
def context(directory, sender) -> HandlerContext:
    """Handler collaborators backed by test doubles."""
    return HandlerContext(directory=directory, sender=sender)


@pytest.fixture
def product_created_envelope() -> Dict[str, Any]:
    """Sample product_created envelope."""
    return {
        "type": "product_created",
        "data": {
            "title": "Desk Lamp",
            "description": "Warm LED lamp",
            "price": 49.99,
            "quantity": 12,
            "category": "lighting",
            "seller": {"id": "s1"},
            "createdAt": "2024-03-05T10:00:00Z",
        },
    }


@pytest.fixture
def order_envelope() -> Dict[str, Any]:
    """Sample order_placed envelope with two line items from two sellers."""
    return {
        "type": "order_placed",
        "data": {
            "userId": "b1",
            "sellerIds": ["s1", "s2"],
            "productIds": ["p1", "p2"],
            "titles": ["Desk Lamp", "Bookshelf"],
            "quantities": [2, 1],
            "remainingQuantities": [{"productId": "p2", "remainingQuantity": 5}],
        },
    }


@pytest.fixture
def encode():
    """Encode a JSON-compatible object as a message body."""

    def _encode(obj: Any) -> bytes:
        return json.dumps(obj).encode("utf-8")

    return _encode


@pytest.fixture
def make_message():
    """Factory for mock incoming broker messages."""

    def _make(body: bytes, delivery_tag: int = 1) -> MagicMock:
        message = MagicMock()
        message.body = body
        message.delivery_tag = delivery_tag
        message.ack = AsyncMock()
        message.nack = AsyncMock()
        return message

    return _make


@pytest.fixture
def mock_pool(mocker):
    """Mock psycopg2 connection pool with one connection and cursor."""
    mock_cur = MagicMock()
    mock_cur.__enter__ = Mock(return_value=mock_cur)
    mock_cur.__exit__ = Mock(return_value=None)

    mock_conn = MagicMock()
    mock_conn.cursor.return_value = mock_cur

    pool = MagicMock()
    pool.getconn.return_value = mock_conn
    mocker.patch("notifybox.directory.ThreadedConnectionPool", return_value=pool)
    return pool


class FakeQueue:
    """Declared queue double whose iterator yields a fixed list of messages."""

    def __init__(self, messages=()):
        self.messages = list(messages)

    def iterator(self):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message


@pytest.fixture
def fake_queue():
    """Factory for declared queue doubles."""
    return FakeQueue
