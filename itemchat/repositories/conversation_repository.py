from datetime import datetime, timezone
from typing import List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from itemchat.models.conversation import ConversationDocument


def canonical_pair(user_x: str, user_y: str) -> Tuple[str, str]:
    a, b = sorted([user_x, user_y])
    return a, b


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("item_id", ASCENDING), ("participant_a", ASCENDING), ("participant_b", ASCENDING)],
            unique=True,
            name="uniq_item_pair",
        )
        await self.collection.create_index([("participant_a", ASCENDING), ("updated_at", DESCENDING)])
        await self.collection.create_index([("participant_b", ASCENDING), ("updated_at", DESCENDING)])

    async def find_by_pair(self, item_id: str, user_x: str, user_y: str) -> Optional[ConversationDocument]:
        # rows written before slots were canonical may hold either order
        return await self.collection.find_one(
            {
                "item_id": item_id,
                "$or": [
                    {"participant_a": user_x, "participant_b": user_y},
                    {"participant_a": user_y, "participant_b": user_x},
                ],
            }
        )

    async def insert(self, item_id: str, user_x: str, user_y: str) -> ConversationDocument:
        """Insert with canonical slot order; raises DuplicateKeyError if the pair already exists."""
        participant_a, participant_b = canonical_pair(user_x, user_y)
        now = datetime.now(timezone.utc)
        doc: ConversationDocument = {
            "_id": str(ObjectId()),
            "item_id": item_id,
            "participant_a": participant_a,
            "participant_b": participant_b,
            "created_at": now,
            "updated_at": now,
            "last_seq": 0,
        }
        await self.collection.insert_one(doc)
        return doc

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"_id": conversation_id})

    async def claim_next_seq(self, conversation_id: str, sender_id: str) -> Optional[ConversationDocument]:
        """Atomically bump updated_at and hand out the next sequence number.

        Returns the updated conversation, or None when the conversation does
        not exist or sender_id is not one of its participants.
        """
        return await self.collection.find_one_and_update(
            {
                "_id": conversation_id,
                "$or": [{"participant_a": sender_id}, {"participant_b": sender_id}],
            },
            {
                "$inc": {"last_seq": 1},
                "$set": {"updated_at": datetime.now(timezone.utc)},
            },
            return_document=ReturnDocument.AFTER,
        )

    async def list_for_user(self, user_id: str, limit: int = 200) -> List[ConversationDocument]:
        query = {"$or": [{"participant_a": user_id}, {"participant_b": user_id}]}
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        cur = self.collection.find(query).sort(sort).limit(limit)
        return await cur.to_list(length=limit)
