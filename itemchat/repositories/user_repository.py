from typing import Dict, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase


class UserRepository:
    """Profile lookups, used for display only."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db["profiles"]

    async def get_display_names(self, user_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        docs = await self._collection.find({"_id": {"$in": ids}}, {"full_name": 1}).to_list(length=len(ids))
        return {doc["_id"]: doc.get("full_name") for doc in docs}
