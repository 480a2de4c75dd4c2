"""Per-conversation fan-out of newly appended messages.

The channel holds no durable state. A viewer that was not subscribed when a
message was appended will not see it here and has to read it back from the
message store with ``list_since``.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional

from itemchat.core.exceptions import UnavailableError
from itemchat.realtime.bus import Bus, BusSubscription, NoopBus, topic_for
from itemchat.schemas.chat import Message


logger = logging.getLogger(__name__)


class ResyncRequired(Exception):
    """The subscription fell behind and was dropped; reconcile through list_since."""

    def __init__(self, conversation_id: str, viewer: str):
        self.conversation_id = conversation_id
        self.viewer = viewer
        super().__init__(f"Viewer {viewer} must resync conversation {conversation_id}")


_CLOSED = object()


class Subscription:
    """Handle for one viewer on one conversation, consumed with ``async for``."""

    def __init__(self, conversation_id: str, viewer: str, buffer_size: int) -> None:
        self.conversation_id = conversation_id
        self.viewer = viewer
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size + 1)
        self._buffer_size = buffer_size
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._closed = False
        self._error: Optional[Exception] = None
        self._waiting = False
        self.last_activity = asyncio.get_running_loop().time()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idle(self) -> bool:
        return not self._waiting

    def offer(self, message: Message) -> bool:
        """Queue a message without blocking; returns False once the subscription is dead."""
        if self._closed:
            return False
        if message.id in self._seen:
            return True
        if self._queue.qsize() >= self._buffer_size:
            logger.warning("Subscription buffer overflow for viewer %s on %s", self.viewer, self.conversation_id)
            self.close(ResyncRequired(self.conversation_id, self.viewer))
            return False
        self._queue.put_nowait(message)
        self._seen[message.id] = None
        # only ids that can still be re-offered matter
        while len(self._seen) > self._buffer_size * 4:
            self._seen.popitem(last=False)
        return True

    def close(self, error: Optional[Exception] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        # pending deliveries are dropped so nothing reaches a detached viewer
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Message:
        self._waiting = True
        try:
            item = await self._queue.get()
        finally:
            self._waiting = False
            self.last_activity = asyncio.get_running_loop().time()
        if item is _CLOSED:
            # keep the sentinel in place for any later read
            self._queue.put_nowait(_CLOSED)
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item


class LiveDeliveryChannel:

    def __init__(self, bus: Optional[Bus] = None, buffer_size: int = 100, idle_timeout: float = 120.0) -> None:
        self._bus = bus or NoopBus()
        self._buffer_size = buffer_size
        self._idle_timeout = idle_timeout
        self._topics: Dict[str, Dict[str, Subscription]] = {}
        self._by_viewer: Dict[str, Subscription] = {}
        self._relays: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._topics.get(conversation_id, {}))

    def active_subscription(self, viewer: str) -> Optional[Subscription]:
        return self._by_viewer.get(viewer)

    def has_relay(self, conversation_id: str) -> bool:
        return conversation_id in self._relays

    async def subscribe(self, conversation_id: str, viewer: str) -> Subscription:
        async with self._lock:
            if self._closed:
                raise UnavailableError("Live delivery channel is shut down", {"conversation_id": conversation_id})
            previous = self._by_viewer.get(viewer)
            if previous is not None:
                await self._detach(previous)
            sub = Subscription(conversation_id, viewer, self._buffer_size)
            self._topics.setdefault(conversation_id, {})[viewer] = sub
            self._by_viewer[viewer] = sub
            if self._bus.enabled and conversation_id not in self._relays:
                try:
                    await self._start_relay(conversation_id)
                except UnavailableError:
                    await self._detach(sub)
                    raise
        logger.info("Viewer %s subscribed to conversation %s", viewer, conversation_id)
        return sub

    async def unsubscribe(self, conversation_id: str, viewer: str) -> None:
        async with self._lock:
            sub = self._topics.get(conversation_id, {}).get(viewer)
            if sub is None:
                return
            await self._detach(sub)
        logger.info("Viewer %s unsubscribed from conversation %s", viewer, conversation_id)

    async def publish(self, message: Message) -> None:
        if self._bus.enabled:
            await self._bus.publish(topic_for(message.conversation_id), message.model_dump_json())
        else:
            self.deliver_local(message)

    def deliver_local(self, message: Message) -> int:
        delivered = 0
        for sub in list(self._topics.get(message.conversation_id, {}).values()):
            if sub.offer(message):
                delivered += 1
            else:
                self._forget(sub)
        return delivered

    async def sweep(self) -> int:
        """Drop subscriptions whose consumer stopped reading; returns how many were removed."""
        now = asyncio.get_running_loop().time()
        removed = 0
        async with self._lock:
            for sub in list(self._by_viewer.values()):
                if sub.closed or (sub.idle and now - sub.last_activity > self._idle_timeout):
                    await self._detach(sub)
                    removed += 1
        if removed:
            logger.info("Swept %d stale subscriptions", removed)
        return removed

    async def run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.sweep()

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            for sub in list(self._by_viewer.values()):
                await self._detach(sub)
            for conversation_id in list(self._relays):
                await self._stop_relay(conversation_id)

    def _forget(self, sub: Subscription) -> None:
        topic = self._topics.get(sub.conversation_id, {})
        if topic.get(sub.viewer) is sub:
            del topic[sub.viewer]
            if not topic:
                self._topics.pop(sub.conversation_id, None)
        if self._by_viewer.get(sub.viewer) is sub:
            del self._by_viewer[sub.viewer]

    async def _detach(self, sub: Subscription) -> None:
        sub.close()
        self._forget(sub)
        if sub.conversation_id not in self._topics and sub.conversation_id in self._relays:
            await self._stop_relay(sub.conversation_id)

    async def _start_relay(self, conversation_id: str) -> None:
        # subscribed before returning so no publish after subscribe() is missed
        bus_sub = await self._bus.subscribe(topic_for(conversation_id))
        self._relays[conversation_id] = asyncio.create_task(
            self._relay(conversation_id, bus_sub), name=f"relay:{conversation_id}"
        )

    async def _stop_relay(self, conversation_id: str) -> None:
        task = self._relays.pop(conversation_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _relay(self, conversation_id: str, bus_sub: BusSubscription) -> None:
        try:
            async for raw in bus_sub.messages():
                self.deliver_local(Message.model_validate_json(raw))
        except UnavailableError as exc:
            logger.warning("Relay for conversation %s failed: %s", conversation_id, exc.message)
            self._relays.pop(conversation_id, None)
            self._fail_topic(conversation_id, exc)
        finally:
            await bus_sub.cancel()

    def _fail_topic(self, conversation_id: str, error: Exception) -> None:
        subs: List[Subscription] = list(self._topics.get(conversation_id, {}).values())
        for sub in subs:
            sub.close(error)
            self._forget(sub)
