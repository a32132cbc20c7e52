"""
In-process change feed.

WHAT: Row-level change notifications (INSERT/UPDATE/DELETE) delivered to subscribed channels
WHY: Views (inbox, message history, badges) reconcile against pushed changes instead of polling
HOW: Committed ORM changes are published to every channel; each channel filters events
     against its bindings and feeds a bounded asyncio.Queue drained by its own consumer task
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from .config import settings
from ..utils.clock import utcnow
from ..utils.logger import get_logger

logger = get_logger(__name__)

Operation = Literal["INSERT", "UPDATE", "DELETE"]
Handler = Callable[["ChangeEvent"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ChangeEvent:
    """A single committed row change."""

    table: str
    operation: Operation
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)
    commit_timestamp: datetime = field(default_factory=utcnow)

    @property
    def row(self) -> Dict[str, Any]:
        """The row the event is about: new values, or old ones for a delete."""
        return self.new or self.old


@dataclass(frozen=True)
class ChangeFilter:
    """
    Subscription predicate: rows in `table` where `column` equals `value`.

    `operation` of "*" matches every operation.
    """

    table: str
    operation: str = "*"
    column: Optional[str] = None
    value: Any = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.operation != "*" and event.operation != self.operation:
            return False
        if self.column is None:
            return True
        row = event.row
        if self.column not in row:
            return False
        return str(row[self.column]) == str(self.value)


@dataclass
class _Binding:
    filter: ChangeFilter
    handler: Handler


class Channel:
    """
    A named, scoped subscription to the change feed.

    Usage:
        channel = feed.channel(f"messages-{conversation_id}")
        channel.on("messages", on_insert, operation="INSERT",
                   column="conversation_id", value=conversation_id)
        await channel.subscribe()
        ...
        await feed.remove_channel(channel)
    """

    def __init__(self, feed: "ChangeFeed", name: str, queue_size: int):
        self.feed = feed
        self.name = name
        self.state = "closed"
        self._bindings: List[_Binding] = []
        self._queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending = 0
        self.dropped_events = 0

    def on(
        self,
        table: str,
        handler: Handler,
        *,
        operation: str = "*",
        column: Optional[str] = None,
        value: Any = None,
    ) -> "Channel":
        """Register a handler for matching events. Returns self for chaining."""
        if self.state == "joined":
            raise RuntimeError(f"Channel {self.name} is already subscribed")
        self._bindings.append(
            _Binding(ChangeFilter(table, operation, column, value), handler)
        )
        return self

    async def subscribe(self) -> "Channel":
        """
        Start receiving events.

        WHAT: Attach the channel to the feed and start its consumer task
        WHY: Events are only delivered between subscribe() and unsubscribe()
        HOW: Create the queue on the running loop, register with the feed
        """
        if self.state == "joined":
            return self
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._task = self._loop.create_task(self._consume(), name=f"feed:{self.name}")
        self.state = "joined"
        self.feed._attach(self)
        logger.debug(f"Channel {self.name} subscribed ({len(self._bindings)} bindings)")
        return self

    async def unsubscribe(self):
        """Detach from the feed and stop the consumer task."""
        if self.state == "closed":
            return
        self.state = "closed"
        self.feed._detach(self)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._queue = None
        logger.debug(f"Channel {self.name} unsubscribed")

    async def __aenter__(self) -> "Channel":
        return await self.subscribe()

    async def __aexit__(self, exc_type, exc, tb):
        await self.feed.remove_channel(self)

    @property
    def idle(self) -> bool:
        return self._queue is None or self._pending == 0

    def wants(self, event: ChangeEvent) -> bool:
        return any(binding.filter.matches(event) for binding in self._bindings)

    def deliver(self, event: ChangeEvent):
        """Queue an event for this channel. Safe to call from any thread."""
        if self.state != "joined" or not self.wants(event):
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._enqueue(event)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, event)

    def _enqueue(self, event: ChangeEvent):
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(event)
            self._pending += 1
        except asyncio.QueueFull:
            self.dropped_events += 1
            logger.warning(
                f"Channel {self.name} queue full, dropped {event.operation} on {event.table}"
            )

    async def _consume(self):
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                for binding in list(self._bindings):
                    if not binding.filter.matches(event):
                        continue
                    try:
                        result = binding.handler(event)
                        if inspect.isawaitable(result):
                            await result
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        logger.error(
                            f"Handler error on channel {self.name} "
                            f"({event.operation} {event.table}): {e}",
                            exc_info=True
                        )
            finally:
                self._pending -= 1
                queue.task_done()

    async def drain(self):
        """Wait until every queued event has been handled."""
        if self._queue is not None:
            await self._queue.join()

    def __repr__(self):
        return f"<Channel(name={self.name}, state={self.state}, bindings={len(self._bindings)})>"


class ChangeFeed:
    """
    Registry of subscribed channels and the publish side of the feed.

    WHAT: Fan out committed row changes to every interested channel
    WHY: One publisher (the store), many independently scoped subscribers
    HOW: publish() offers the event to each joined channel; channels filter
    """

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.FEED_CHANNEL_QUEUE_SIZE
        self._channels: List[Channel] = []

    def channel(self, name: str) -> Channel:
        """Create a new (not yet subscribed) channel."""
        return Channel(self, name, self.queue_size)

    @property
    def active_channels(self) -> List[Channel]:
        return list(self._channels)

    def _attach(self, channel: Channel):
        if channel not in self._channels:
            self._channels.append(channel)

    def _detach(self, channel: Channel):
        if channel in self._channels:
            self._channels.remove(channel)

    async def remove_channel(self, channel: Channel):
        await channel.unsubscribe()

    async def remove_all_channels(self):
        for channel in list(self._channels):
            await channel.unsubscribe()

    def publish(self, event: ChangeEvent):
        for channel in list(self._channels):
            channel.deliver(event)

    async def drain(self, max_rounds: int = 50):
        """
        Wait until all channels are idle.

        Handlers may write to the store and publish further events, so this
        loops until a full pass finds nothing left to process.
        """
        for _ in range(max_rounds):
            # let call_soon_threadsafe deliveries land before checking
            await asyncio.sleep(0)
            busy = [channel for channel in self._channels if not channel.idle]
            if not busy:
                return
            await asyncio.gather(*(channel.drain() for channel in busy))
        logger.warning(f"Change feed still busy after {max_rounds} drain rounds")


# Process-wide feed the store publishes to
change_feed = ChangeFeed()
