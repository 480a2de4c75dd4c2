from typing import Dict, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from itemchat.models.item import ItemDocument


class ItemRepository:
    """Read-only view of the item catalog owned by another service."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db["items"]

    async def get_item(self, item_id: str) -> Optional[ItemDocument]:
        return await self._collection.find_one({"_id": item_id}, {"title": 1, "owner_id": 1})

    async def get_titles(self, item_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(set(item_ids))
        if not ids:
            return {}
        docs = await self._collection.find({"_id": {"$in": ids}}, {"title": 1}).to_list(length=len(ids))
        return {doc["_id"]: doc.get("title", "") for doc in docs}
