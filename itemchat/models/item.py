from typing import TypedDict


class ItemDocument(TypedDict, total=False):
    _id: str
    title: str
    owner_id: str
