import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from itemchat.repositories.conversation_repository import ConversationRepository
from itemchat.repositories.item_repository import ItemRepository
from itemchat.repositories.user_repository import UserRepository
from itemchat.schemas.chat import ConversationSummary


logger = logging.getLogger(__name__)


class ConversationListProjector:
    """Per-user, most-recent-first conversation summaries.

    Views are recomputed in full on the first read after an invalidation.
    Entries also expire after ``ttl`` seconds, which bounds staleness when
    another process appended to a conversation.
    """

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        item_repo: ItemRepository,
        user_repo: UserRepository,
        ttl: float = 5.0,
        limit: int = 200,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._item_repo = item_repo
        self._user_repo = user_repo
        self._ttl = ttl
        self._limit = limit
        self._cache: Dict[str, Tuple[float, List[ConversationSummary]]] = {}
        self._generation: Dict[str, int] = {}

    def invalidate(self, *user_ids: str) -> None:
        for user_id in user_ids:
            self._cache.pop(user_id, None)
            self._generation[user_id] = self._generation.get(user_id, 0) + 1

    async def list_for_user(self, user_id: str) -> List[ConversationSummary]:
        now = asyncio.get_running_loop().time()
        cached = self._cached(user_id, now)
        if cached is not None:
            return list(cached)
        generation = self._generation.get(user_id, 0)
        summaries = await self._compute(user_id)
        # an invalidation that raced the recompute wins; do not cache stale data
        if self._generation.get(user_id, 0) == generation:
            self._cache[user_id] = (now, summaries)
        return list(summaries)

    def _cached(self, user_id: str, now: float) -> Optional[List[ConversationSummary]]:
        entry = self._cache.get(user_id)
        if entry is None:
            return None
        stored_at, summaries = entry
        if now - stored_at > self._ttl:
            self._cache.pop(user_id, None)
            return None
        return summaries

    async def _compute(self, user_id: str) -> List[ConversationSummary]:
        conversations = await self._conversation_repo.list_for_user(user_id, self._limit)
        if len(conversations) >= self._limit:
            logger.warning("Conversation list for %s hit the limit of %d entries; older ones are not shown", user_id, self._limit)
        counterparts = {
            convo["_id"]: convo["participant_b"] if convo["participant_a"] == user_id else convo["participant_a"]
            for convo in conversations
        }
        titles = await self._item_repo.get_titles(convo["item_id"] for convo in conversations)
        names = await self._user_repo.get_display_names(counterparts.values())
        return [
            ConversationSummary(
                conversation_id=convo["_id"],
                item_id=convo["item_id"],
                item_title=titles.get(convo["item_id"]),
                counterpart_id=counterparts[convo["_id"]],
                counterpart_name=names.get(counterparts[convo["_id"]]),
                updated_at=convo["updated_at"],
            )
            for convo in conversations
        ]
