"""
Live delivery of index changes to connected viewers.

The crawler drops "url X was indexed" events into a DeliveryQueue and
moves on. A Dispatcher pops one event per tick and sends it to every
open viewer channel, so a slow viewer never holds up the crawl.

A viewer channel is anything with a `closed` attribute and an async
`send_json(obj)` - in practice an aiohttp WebSocketResponse.
"""

import asyncio
import logging
from collections import deque
from typing import Iterable, List, NamedTuple, Optional

logger = logging.getLogger(__name__)


class DeliveryEvent(NamedTuple):
    url: str
    data: Optional[dict]  # PageRecord snapshot taken at enqueue time

    def to_message(self) -> dict:
        return {"url": self.url, "data": self.data}


class DeliveryQueue:
    """
    FIFO of pending events. With `max_pending` set, the oldest event is
    dropped to make room for a new one.
    """

    def __init__(self, max_pending: int = 0):
        self.max_pending = max_pending
        self._events = deque()
        self.dropped = 0

    def enqueue(self, url: str, snapshot: Optional[dict]):
        if self.max_pending and len(self._events) >= self.max_pending:
            stale = self._events.popleft()
            self.dropped += 1
            logger.warning("delivery queue full (%d), dropped event for %s",
                           self.max_pending, stale.url)
        self._events.append(DeliveryEvent(url, snapshot))

    def pop(self) -> Optional[DeliveryEvent]:
        """Oldest pending event, or None."""
        if not self._events:
            return None
        return self._events.popleft()

    def __len__(self) -> int:
        return len(self._events)


class ViewerRegistry:
    """The set of connected viewer channels."""

    def __init__(self):
        self._channels = []

    def register(self, channel):
        if channel not in self._channels:
            self._channels.append(channel)
            logger.info("viewer connected (%d total)", len(self._channels))

    def unregister(self, channel):
        if channel in self._channels:
            self._channels.remove(channel)
            logger.info("viewer disconnected (%d left)", len(self._channels))

    def channels(self) -> List:
        """Copy of the current members; safe to iterate across awaits."""
        return list(self._channels)

    def __contains__(self, channel) -> bool:
        return channel in self._channels

    def __len__(self) -> int:
        return len(self._channels)


async def send(channel, message: dict, timeout: Optional[float] = None) -> bool:
    """
    Send one message, skipping closed channels. A send that can't finish
    within `timeout` (a viewer not reading) counts as skipped. Returns
    True if sent.
    """
    if channel.closed:
        return False
    try:
        await asyncio.wait_for(channel.send_json(message), timeout)
    except asyncio.TimeoutError:
        logger.debug("viewer stalled, skipped message for %s", message.get("url"))
        return False
    except (ConnectionError, RuntimeError) as e:
        logger.debug("dropping message for %s: %s", message.get("url"), e)
        return False
    return True


class Dispatcher:
    """Moves events from the queue to the viewers, one per tick."""

    def __init__(self, queue: DeliveryQueue, registry: ViewerRegistry, interval: float = 0.1,
                 send_timeout: Optional[float] = 5.0):
        self.queue = queue
        self.registry = registry
        self.interval = interval
        self.send_timeout = send_timeout
        self.delivered = 0

    async def connect(self, channel, records: Iterable):
        """
        Register a viewer and replay the whole index to it, one message
        per (url, PageRecord) pair in `records`. Replay stops at the first
        message the viewer fails to take.
        """
        self.registry.register(channel)
        sent = 0
        for url, record in records:
            if not await send(channel, {"url": url, "data": record.snapshot()}, self.send_timeout):
                break
            sent += 1
        return sent

    def disconnect(self, channel):
        self.registry.unregister(channel)

    async def drain_one(self) -> Optional[DeliveryEvent]:
        """Send the oldest pending event to every open viewer at once."""
        event = self.queue.pop()
        if event is None:
            return None
        message = event.to_message()
        await asyncio.gather(*(send(channel, message, self.send_timeout)
                               for channel in self.registry.channels()))
        self.delivered += 1
        return event

    async def run(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.drain_one()
