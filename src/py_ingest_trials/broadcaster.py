# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Fan-out of outlier events to connected subscribers."""

import asyncio
import logging
import types
from collections.abc import AsyncIterator

from pydantic import BaseModel

from .exceptions import SubscriberLimitReached
from .models import ConnectionEvent

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = "Connected to Clinical Trial event stream"


class Subscription:
    """One subscriber's bounded inbox of serialized events.

    Use it as an async context manager so it is removed from the
    broadcaster when the subscriber goes away.
    """

    def __init__(self, broadcaster: "EventBroadcaster", queue_size: int) -> None:
        self.broadcaster = broadcaster
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self._closing = asyncio.Event()

    def deliver(self, payload: str) -> bool:
        """Queue a payload without waiting. Returns False if it was dropped."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    async def receive(self, timeout: float | None = None) -> str:
        """Wait for the next payload, raising TimeoutError after `timeout` seconds."""
        return await asyncio.wait_for(self.queue.get(), timeout)

    def drain(self) -> list[str]:
        """Return every queued payload without waiting."""
        payloads = []
        while not self.queue.empty():
            payloads.append(self.queue.get_nowait())
        return payloads

    def close(self) -> None:
        """Stop accepting events and end any pending iteration once the queue is empty."""
        self.closed = True
        self._closing.set()
        self.broadcaster.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.close()

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        if not self.queue.empty():
            return self.queue.get_nowait()
        if self.closed:
            raise StopAsyncIteration

        getter = asyncio.ensure_future(self.queue.get())
        closing = asyncio.ensure_future(self._closing.wait())
        try:
            await asyncio.wait({getter, closing}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (getter, closing):
                if not waiter.done():
                    waiter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        raise StopAsyncIteration


class EventBroadcaster:
    """A bounded registry of subscribers owned by one long-lived service.

    Delivery is at most once: an event that does not fit in a subscriber's
    queue is dropped for that subscriber only. Broadcasting never blocks and
    never raises into the pipeline.
    """

    def __init__(self, max_subscribers: int = 100, queue_size: int = 256) -> None:
        if max_subscribers < 1 or queue_size < 1:
            msg = "max_subscribers and queue_size must both be positive."
            raise ValueError(msg)
        self.max_subscribers = max_subscribers
        self.queue_size = queue_size
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Register a subscriber and greet it with a connection event."""
        if len(self._subscribers) >= self.max_subscribers:
            msg = f"Subscriber limit of {self.max_subscribers} reached."
            raise SubscriberLimitReached(msg)
        subscription = Subscription(self, self.queue_size)
        self._subscribers.add(subscription)
        subscription.deliver(
            ConnectionEvent(data={"message": WELCOME_MESSAGE}).model_dump_json()
        )
        logger.info("Subscriber connected (%d active).", len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.discard(subscription)
            logger.info("Subscriber disconnected (%d active).", len(self._subscribers))

    def broadcast(self, event: BaseModel) -> int:
        """Send an event to every subscriber.

        Returns:
            The number of subscribers the event was queued for.
        """
        payload = event.model_dump_json(by_alias=True)
        delivered = 0
        # Iterate over a copy; subscribers may disconnect while we deliver.
        for subscription in list(self._subscribers):
            if subscription.closed:
                self.unsubscribe(subscription)
                continue
            if subscription.deliver(payload):
                delivered += 1
            else:
                logger.warning("Dropped event for a subscriber whose queue is full.")
        return delivered
