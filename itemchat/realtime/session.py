"""Viewer-side session: one live subscription plus history reconciliation.

The session keeps the highest ``seq`` it has handed out. Pushed messages at
or below it are duplicates and are dropped; a pushed message that skips ahead
means something was missed, so the gap is filled from the message store
before the pushed message is yielded.
"""
import asyncio
import enum
import logging
import uuid
from typing import AsyncIterator, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from itemchat.core.exceptions import UnavailableError
from itemchat.realtime.channel import LiveDeliveryChannel, ResyncRequired, Subscription
from itemchat.schemas.chat import Message
from itemchat.services.message_store import MessageStore


logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    UNOPENED = "unopened"
    RESOLVING = "resolving"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"


class ChatSession:

    def __init__(
        self,
        user_id: str,
        store: MessageStore,
        channel: LiveDeliveryChannel,
        max_attempts: int = 5,
        backoff_max: float = 10.0,
        poll_interval: float = 5.0,
    ) -> None:
        self.user_id = user_id
        # one viewer per session; a user may hold several sessions
        self.viewer = f"{user_id}/{uuid.uuid4().hex[:12]}"
        self._store = store
        self._channel = channel
        self._max_attempts = max_attempts
        self._backoff_max = backoff_max
        self._poll_interval = poll_interval
        self.state = SessionState.UNOPENED
        self.conversation_id: Optional[str] = None
        self.last_seq = 0
        self._subscription: Optional[Subscription] = None

    async def open(self, conversation_id: str, cursor: Optional[int] = None) -> List[Message]:
        """Subscribe to a conversation and return its history after ``cursor`` (all of it by default)."""
        await self.close()
        self.state = SessionState.RESOLVING
        self.conversation_id = conversation_id
        self.last_seq = cursor or 0
        try:
            # subscribe first so nothing appended during the fetch is lost
            self._subscription = await self._channel.subscribe(conversation_id, self.viewer)
            history = await self._store.list_since(conversation_id, cursor)
        except BaseException:
            await self.close()
            raise
        if self.conversation_id != conversation_id:
            return []
        self.state = SessionState.SUBSCRIBED
        return self._accept(history)

    async def reconnect(self) -> List[Message]:
        """Re-establish the subscription, then return whatever was missed meanwhile."""
        if self.conversation_id is None:
            raise RuntimeError("Session has no open conversation")
        conversation_id = self.conversation_id
        self.state = SessionState.RECONNECTING
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(UnavailableError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.2, max=self._backoff_max),
            reraise=True,
        ):
            with attempt:
                subscription = await self._channel.subscribe(conversation_id, self.viewer)
                if self.conversation_id != conversation_id:
                    await self._channel.unsubscribe(conversation_id, self.viewer)
                    return []
                self._subscription = subscription
                missed = await self._store.list_since(conversation_id, self.last_seq)
        if self.conversation_id != conversation_id:
            # closed or switched while reconnecting
            return []
        self.state = SessionState.SUBSCRIBED
        logger.info("Viewer %s resynced %d messages on %s", self.viewer, len(missed), conversation_id)
        return self._accept(missed)

    async def send(self, content: str) -> Message:
        if self.conversation_id is None:
            raise RuntimeError("Session has no open conversation")
        return await self._store.append(self.conversation_id, self.user_id, content)

    async def messages(self) -> AsyncIterator[Message]:
        """Yield new messages in seq order until the session is closed."""
        while self._subscription is not None:
            subscription = self._subscription
            try:
                async for message in subscription:
                    if message.seq <= self.last_seq:
                        continue
                    if message.seq > self.last_seq + 1:
                        for recovered in await self._fill_gap():
                            yield recovered
                        if message.seq <= self.last_seq:
                            continue
                        if message.seq > self.last_seq + 1:
                            logger.warning(
                                "Viewer %s skipping seqs %d-%d on %s",
                                self.viewer, self.last_seq + 1, message.seq - 1, subscription.conversation_id,
                            )
                    self.last_seq = message.seq
                    yield message
            except (ResyncRequired, UnavailableError) as exc:
                logger.info("Viewer %s lost live delivery: %s", self.viewer, exc)
            if self._subscription is not subscription or self.conversation_id is None:
                continue
            # still current: the channel closed it (sweeper, shutdown), not close()
            logger.info("Viewer %s recovering subscription on %s", self.viewer, subscription.conversation_id)
            async for recovered in self._recover():
                yield recovered

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        self.conversation_id = None
        self.state = SessionState.UNOPENED
        if subscription is not None:
            await self._channel.unsubscribe(subscription.conversation_id, self.viewer)

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _recover(self) -> AsyncIterator[Message]:
        """Reconnect with backoff, polling the store between rounds until it succeeds."""
        conversation_id = self.conversation_id
        while conversation_id is not None and self.conversation_id == conversation_id:
            try:
                for recovered in await self.reconnect():
                    yield recovered
                return
            except UnavailableError:
                logger.warning("Viewer %s cannot resubscribe, polling %s", self.viewer, conversation_id)
            try:
                for recovered in await self._fill_gap():
                    yield recovered
            except UnavailableError:
                logger.warning("Viewer %s cannot poll %s either", self.viewer, conversation_id)
            await asyncio.sleep(self._poll_interval)

    async def _fill_gap(self) -> List[Message]:
        conversation_id = self.conversation_id
        if conversation_id is None:
            return []
        missed = await self._store.list_since(conversation_id, self.last_seq)
        if self.conversation_id != conversation_id:
            return []
        return self._accept(missed)

    def _accept(self, messages: List[Message]) -> List[Message]:
        # list_since stops before unwritten seqs, so the last one is a safe cursor
        fresh = [m for m in messages if m.seq > self.last_seq]
        if fresh:
            self.last_seq = fresh[-1].seq
        return fresh
