#!/usr/bin/env python3
"""Per-queue delivery metrics exposed on the /metrics endpoint."""

import threading
from typing import Dict, Optional, Set

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

OUTCOMES = ("received", "acked", "ignored", "rejected")


class ConsumerStats:
    """Prometheus metrics written by consumer tasks and read by the HTTP thread."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """
        Initialize ConsumerStats.

        Args:
            registry: Registry to register metrics on (a private one by default)
        """
        self.registry: CollectorRegistry = registry if registry is not None else CollectorRegistry()
        self.messages_total = Counter(
            "notifybox_messages",
            "Messages per queue and outcome",
            ["queue", "outcome"],
            registry=self.registry,
        )
        self.messages_in_flight = Gauge(
            "notifybox_messages_in_flight",
            "Messages currently being handled per queue",
            ["queue"],
            registry=self.registry,
        )
        self._queues: Set[str] = set()
        self._lock = threading.Lock()

    def _incr(self, queue: str, outcome: str) -> None:
        with self._lock:
            self._queues.add(queue)
        self.messages_total.labels(queue=queue, outcome=outcome).inc()

    def record_received(self, queue: str) -> None:
        self._incr(queue, "received")
        self.messages_in_flight.labels(queue=queue).inc()

    def record_acked(self, queue: str, handled: bool = True) -> None:
        """Record an ack; unknown event types are acked but counted as ignored."""
        self._incr(queue, "acked")
        if not handled:
            self._incr(queue, "ignored")

    def record_rejected(self, queue: str) -> None:
        self._incr(queue, "rejected")

    def record_done(self, queue: str) -> None:
        self.messages_in_flight.labels(queue=queue).dec()

    def _sample(self, name: str, labels: Dict[str, str]) -> int:
        value = self.registry.get_sample_value(name, labels)
        return int(value) if value is not None else 0

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        """Return current counter values, with the in-flight gauge, per queue."""
        with self._lock:
            queues = sorted(self._queues)
        return {
            queue: {
                **{
                    outcome: self._sample("notifybox_messages_total", {"queue": queue, "outcome": outcome})
                    for outcome in OUTCOMES
                },
                "in_flight": self._sample("notifybox_messages_in_flight", {"queue": queue}),
            }
            for queue in queues
        }

    def render_prometheus(self) -> str:
        """Render the registry in Prometheus text exposition format."""
        return generate_latest(self.registry).decode("utf-8")
