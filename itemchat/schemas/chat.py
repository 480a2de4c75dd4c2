from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def as_utc(value: datetime) -> datetime:
    # mongo hands back naive UTC datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Message(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    content: str
    seq: int
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            content=doc["content"],
            seq=doc["seq"],
            created_at=doc["created_at"],
        )


class Resolution(BaseModel):
    """Outcome of resolve-or-create: the conversation id and whether this call created it."""

    conversation_id: str
    created: bool

    @property
    def status(self) -> Literal["created", "existing"]:
        return "created" if self.created else "existing"


class ConversationSummary(BaseModel):

    conversation_id: str
    item_id: str
    item_title: Optional[str] = None
    counterpart_id: str
    counterpart_name: Optional[str] = None
    updated_at: datetime

    @field_validator("updated_at")
    @classmethod
    def normalize_updated_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class ResolveConversationRequest(BaseModel):

    item_id: str = Field(min_length=1)
    counterpart_id: str = Field(min_length=1)


class ResolveConversationResponse(BaseModel):

    conversation_id: str
    status: Literal["created", "existing"]


class SendMessageRequest(BaseModel):

    content: str


class MessageListResponse(BaseModel):

    items: List[Message]
    next_cursor: Optional[int] = None


class ConversationListResponse(BaseModel):

    items: List[ConversationSummary]
