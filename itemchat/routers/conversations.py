from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from itemchat.schemas.chat import (
    ConversationListResponse,
    Message,
    MessageListResponse,
    ResolveConversationRequest,
    ResolveConversationResponse,
    SendMessageRequest,
)
from itemchat.services import ChatServices
from itemchat.utils.dependencies import get_chat_services, get_current_user_id


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.post("", response_model=ResolveConversationResponse)
async def resolve_conversation(body: ResolveConversationRequest, response: Response, current_user: str = Depends(get_current_user_id), chat: ChatServices = Depends(get_chat_services)):
    resolution = await chat.directory.resolve_or_create(body.item_id, current_user, body.counterpart_id)
    response.status_code = status.HTTP_201_CREATED if resolution.created else status.HTTP_200_OK
    return ResolveConversationResponse(conversation_id=resolution.conversation_id, status=resolution.status)


@router.get("", response_model=ConversationListResponse)
async def list_conversations(current_user: str = Depends(get_current_user_id), chat: ChatServices = Depends(get_chat_services)):
    return ConversationListResponse(items=await chat.projector.list_for_user(current_user))


@router.get("/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages(conversation_id: str, after: Optional[int] = Query(None, ge=0), limit: Optional[int] = Query(None, ge=1, le=500), current_user: str = Depends(get_current_user_id), chat: ChatServices = Depends(get_chat_services)):
    await chat.directory.get(conversation_id, current_user)
    messages = await chat.store.list_since(conversation_id, after, limit=limit)
    next_cursor = messages[-1].seq if messages else after
    return MessageListResponse(items=messages, next_cursor=next_cursor)


@router.post("/{conversation_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: str = Depends(get_current_user_id), chat: ChatServices = Depends(get_chat_services)):
    return await chat.store.append(conversation_id, current_user, body.content)
