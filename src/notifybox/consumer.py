#!/usr/bin/env python3
"""QueueConsumer class for consuming one broker queue."""

import asyncio
from typing import Any, Optional, Set

from loguru import logger

from notifybox.config import DEFAULT_MAX_PARALLEL
from notifybox.metrics import ConsumerStats
from notifybox.router import EventRouter


class QueueConsumer:
    """Consumes one durable queue, handling each delivery as its own task.

    Successive deliveries are not serialized: a new message may start before
    the previous one is acknowledged. Failed messages are rejected without
    requeue and are therefore dropped.
    """

    def __init__(
        self,
        queue_name: str,
        queue: Any,
        router: EventRouter,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        stats: Optional[ConsumerStats] = None,
    ) -> None:
        """
        Initialize QueueConsumer.

        Args:
            queue_name: Name of the queue, used for routing and logging
            queue: Declared broker queue (aio_pika.abc.AbstractQueue)
            router: EventRouter that decodes and handles messages
            max_parallel: Maximum messages handled at once (0 = unbounded)
            stats: Counters shared with the HTTP server (optional)
        """
        if max_parallel < 0:
            raise ValueError("max_parallel must be non-negative")

        self.queue_name: str = queue_name
        self.queue: Any = queue
        self.router: EventRouter = router
        self.max_parallel: int = max_parallel
        self.stats: ConsumerStats = stats or ConsumerStats()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def process_message(self, message: Any) -> None:
        """
        Handle a single delivery and settle it with the broker.

        Any handler or decode error rejects the message without requeue.

        Args:
            message: Incoming broker message (aio_pika.abc.AbstractIncomingMessage)
        """
        with logger.contextualize(worker=self.queue_name):
            logger.info("Received message {} from {}", message.delivery_tag, self.queue_name)
            self.stats.record_received(self.queue_name)
            try:
                try:
                    handled = await self.router.dispatch(self.queue_name, message.body)
                # Any failure rejects the message; none may stop the loop
                except Exception as e:
                    logger.opt(exception=e).error(
                        "Error handling message {} from {}: {}", message.delivery_tag, self.queue_name, e
                    )
                    await message.nack(requeue=False)
                    self.stats.record_rejected(self.queue_name)
                    return

                await message.ack()
                self.stats.record_acked(self.queue_name, handled=handled)
                logger.debug("Acknowledged message {} from {}", message.delivery_tag, self.queue_name)
            finally:
                self.stats.record_done(self.queue_name)

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if self._semaphore is not None:
            self._semaphore.release()
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Only reachable when settling with the broker itself failed
            logger.opt(exception=exc).error("Failed to settle message on {}: {}", self.queue_name, exc)

    async def spawn(self, message: Any) -> "asyncio.Task[None]":
        """
        Start handling a message as an independent task.

        Waits for a free slot first when max_parallel is set.

        Args:
            message: Incoming broker message

        Returns:
            The task handling the message
        """
        if self.max_parallel and self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_parallel)
        if self._semaphore is not None:
            await self._semaphore.acquire()

        task = asyncio.create_task(self.process_message(message))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    async def run(self) -> None:
        """Main consumption loop; runs until cancelled."""
        with logger.contextualize(worker=self.queue_name):
            logger.info("Consuming from {} (max_parallel={})", self.queue_name, self.max_parallel or "unbounded")
            async with self.queue.iterator() as messages:
                async for message in messages:
                    await self.spawn(message)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Wait for in-flight messages to settle.

        Args:
            timeout: Seconds to wait before giving up (None = wait forever)
        """
        if not self._tasks:
            return
        logger.info("Waiting for {} in-flight message(s) on {}", len(self._tasks), self.queue_name)
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("{} message(s) on {} still in flight after {}s", len(pending), self.queue_name, timeout)
