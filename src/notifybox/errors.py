#!/usr/bin/env python3
"""Error taxonomy for event decoding, delivery and persistence."""

from typing import Any, List


class NotifyboxError(Exception):
    """Base class for all dispatcher errors."""

    ...


class DecodeError(NotifyboxError):
    """Raised when a message body is not a valid event envelope."""

    ...


class UnknownEventType(NotifyboxError):
    """Raised by the decoder when a queue has no variant for an event type."""

    def __init__(self, queue: str, event_type: Any) -> None:
        super().__init__(f"Unknown event type {event_type!r} on queue {queue}")
        self.queue = queue
        self.event_type = event_type


class DeliveryError(NotifyboxError):
    """Raised when an email could not be handed to the provider."""

    ...


class StoreError(NotifyboxError):
    """Raised when the user directory read or upsert fails."""

    ...


class SellerFanOutError(DeliveryError):
    """Raised when at least one per-seller send failed during an order fan-out.

    Carries every line item's outcome so partial success stays observable.
    """

    def __init__(self, event_type: str, outcomes: List[Any]) -> None:
        self.event_type = event_type
        self.outcomes = outcomes
        failed = [o for o in outcomes if o.error is not None]
        super().__init__(
            f"{len(failed)} of {len(outcomes)} seller notification(s) failed for {event_type}"
        )

    @property
    def failed(self) -> List[Any]:
        return [o for o in self.outcomes if o.error is not None]
