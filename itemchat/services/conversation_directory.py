import logging

from pymongo.errors import DuplicateKeyError, PyMongoError

from itemchat.core.exceptions import ConflictError, NotFoundError, Unauthorized, UnavailableError
from itemchat.models.conversation import ConversationDocument
from itemchat.repositories.conversation_repository import ConversationRepository
from itemchat.repositories.item_repository import ItemRepository
from itemchat.schemas.chat import Resolution
from itemchat.services.conversation_list import ConversationListProjector


logger = logging.getLogger(__name__)


class ConversationDirectory:
    """Resolves the single conversation for an item and an unordered pair of users."""

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        item_repo: ItemRepository,
        projector: ConversationListProjector,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._item_repo = item_repo
        self._projector = projector

    async def resolve_or_create(self, item_id: str, requester: str, counterpart: str) -> Resolution:
        if requester == counterpart:
            raise Unauthorized("Cannot start a conversation with yourself", {"user_id": requester})
        try:
            if await self._item_repo.get_item(item_id) is None:
                raise NotFoundError("Item", item_id)

            existing = await self._conversation_repo.find_by_pair(item_id, requester, counterpart)
            if existing:
                return Resolution(conversation_id=existing["_id"], created=False)

            try:
                created = await self._create(item_id, requester, counterpart)
            except ConflictError:
                # the concurrent insert won; its row is now visible
                winner = await self._conversation_repo.find_by_pair(item_id, requester, counterpart)
                if winner is None:
                    raise UnavailableError("Conversation vanished after a creation conflict", {"item_id": item_id})
                return Resolution(conversation_id=winner["_id"], created=False)
        except PyMongoError as exc:
            raise UnavailableError("Conversation store unavailable") from exc

        self._projector.invalidate(requester, counterpart)
        logger.info("Created conversation %s for item %s", created["_id"], item_id)
        return Resolution(conversation_id=created["_id"], created=True)

    async def get(self, conversation_id: str, viewer: str) -> ConversationDocument:
        """Return the conversation, refusing anyone who is not one of its participants."""
        try:
            convo = await self._conversation_repo.get(conversation_id)
        except PyMongoError as exc:
            raise UnavailableError("Conversation store unavailable") from exc
        if convo is None:
            raise NotFoundError("Conversation", conversation_id)
        if viewer not in (convo["participant_a"], convo["participant_b"]):
            raise Unauthorized("Not a participant of this conversation", {"conversation_id": conversation_id})
        return convo

    async def _create(self, item_id: str, requester: str, counterpart: str) -> ConversationDocument:
        try:
            return await self._conversation_repo.insert(item_id, requester, counterpart)
        except DuplicateKeyError as exc:
            logger.warning("Creation race on item %s between %s and %s", item_id, requester, counterpart)
            raise ConflictError("Conversation already exists", {"item_id": item_id}) from exc
