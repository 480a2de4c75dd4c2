from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from itemchat.models.message import MessageDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("seq", ASCENDING)],
            unique=True,
            name="uniq_conversation_seq",
        )

    async def save_message(self, conversation_id: str, sender_id: str, content: str, seq: int) -> MessageDocument:
        doc: MessageDocument = {
            "_id": str(ObjectId()),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "seq": seq,
            "created_at": datetime.now(timezone.utc),
        }
        await self.collection.insert_one(doc)
        return doc

    async def get_since(self, conversation_id: str, after_seq: int = 0, limit: Optional[int] = None) -> List[MessageDocument]:
        query: Dict[str, Any] = {"conversation_id": conversation_id, "seq": {"$gt": after_seq}}
        cur = self.collection.find(query).sort([("seq", ASCENDING), ("created_at", ASCENDING)])
        if limit:
            cur = cur.limit(limit)
        return await cur.to_list(length=limit)
