from datetime import datetime
from typing import TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    item_id: str
    # canonical order: participant_a < participant_b
    participant_a: str
    participant_b: str
    created_at: datetime
    updated_at: datetime
    # highest seq handed out to a message of this conversation
    last_seq: int
