import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from pymongo.errors import PyMongoError

from itemchat.core.exceptions import ChatError, NotFoundError, Unauthorized, UnavailableError, ValidationError
from itemchat.models.message import MessageDocument
from itemchat.realtime.channel import LiveDeliveryChannel
from itemchat.repositories.conversation_repository import ConversationRepository
from itemchat.repositories.message_repository import MessageRepository
from itemchat.schemas.chat import Message, as_utc
from itemchat.services.conversation_list import ConversationListProjector


logger = logging.getLogger(__name__)


class MessageStore:
    """Append-only message log, ordered per conversation by sequence number.

    A seq is claimed on the conversation document before the message row is
    written, so for a moment a later seq can be readable while an earlier one
    is not. Reads never hand out a cursor past such a hole until it is older
    than ``settle_timeout``; after that the insert is taken to have failed
    and the seq is skipped for good.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        channel: LiveDeliveryChannel,
        projector: ConversationListProjector,
        max_length: int = 4000,
        settle_timeout: float = 2.0,
        settle_poll: float = 0.05,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._channel = channel
        self._projector = projector
        self._max_length = max_length
        self._settle_timeout = settle_timeout
        self._settle_poll = settle_poll

    async def append(self, conversation_id: str, sender_id: str, content: Optional[str]) -> Message:
        text = self._clean(content)
        try:
            convo = await self._conversation_repo.claim_next_seq(conversation_id, sender_id)
            if convo is None:
                # tell an unknown conversation apart from a foreign sender
                if await self._conversation_repo.get(conversation_id) is None:
                    raise NotFoundError("Conversation", conversation_id)
                raise Unauthorized("Sender is not a participant of this conversation", {"sender_id": sender_id})
            doc = await self._message_repo.save_message(conversation_id, sender_id, text, convo["last_seq"])
        except PyMongoError as exc:
            raise UnavailableError("Message store unavailable", {"conversation_id": conversation_id}) from exc

        message = Message.from_document(doc)
        self._projector.invalidate(convo["participant_a"], convo["participant_b"])
        try:
            await self._channel.publish(message)
        except ChatError:
            # viewers recover the message through list_since
            logger.exception("Live delivery failed for message %s", message.id)
        return message

    async def list_since(self, conversation_id: str, cursor: Optional[int] = None, limit: Optional[int] = None) -> List[Message]:
        """Messages strictly after ``cursor`` (a seq), oldest first; None means from the beginning.

        The result stops short of a seq that was claimed but is not written
        yet. Such a hole is re-polled for up to ``settle_timeout`` seconds.
        """
        cursor = cursor or 0
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settle_timeout + self._settle_poll
        try:
            if await self._conversation_repo.get(conversation_id) is None:
                raise NotFoundError("Conversation", conversation_id)
            while True:
                docs = await self._message_repo.get_since(conversation_id, cursor, limit)
                ready, pending = self._settled_prefix(docs, cursor)
                if not pending or loop.time() >= deadline:
                    break
                await asyncio.sleep(self._settle_poll)
        except PyMongoError as exc:
            raise UnavailableError("Message store unavailable", {"conversation_id": conversation_id}) from exc
        if pending:
            logger.warning(
                "Seq %d of conversation %s still unwritten after %.1fs",
                ready[-1]["seq"] + 1 if ready else cursor + 1,
                conversation_id,
                self._settle_timeout,
            )
        return [Message.from_document(doc) for doc in ready]

    def _settled_prefix(self, docs: List[MessageDocument], cursor: int) -> Tuple[List[MessageDocument], bool]:
        """Cut ``docs`` at the first hole that may still be filled; the flag says whether one was found."""
        now = datetime.now(timezone.utc)
        expected = cursor + 1
        for index, doc in enumerate(docs):
            if doc["seq"] != expected:
                # the row after the hole was written after the missing seq was claimed
                age = (now - as_utc(doc["created_at"])).total_seconds()
                if age < self._settle_timeout:
                    return docs[:index], True
            expected = doc["seq"] + 1
        return docs, False

    def _clean(self, content: Optional[str]) -> str:
        if not isinstance(content, str):
            raise ValidationError("Message content is required")
        text = content.strip()
        if not text:
            raise ValidationError("Message content cannot be empty")
        if len(text) > self._max_length:
            raise ValidationError(
                "Message content is too long",
                {"max_length": self._max_length, "length": len(text)},
            )
        return text
