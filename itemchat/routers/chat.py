import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from itemchat.core.config import get_settings
from itemchat.core.exceptions import (
    ChatError,
    NotFoundError,
    Unauthenticated,
    Unauthorized,
    UnavailableError,
    ValidationError,
)
from itemchat.realtime.session import ChatSession
from itemchat.schemas.chat import Message
from itemchat.services import ChatServices
from itemchat.utils.dependencies import get_chat_services
from itemchat.utils.security import decode_access_token


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["chat"])


def close_code_for(exc: ChatError) -> int:
    if isinstance(exc, Unauthenticated):
        return 4401
    if isinstance(exc, Unauthorized):
        return 4403
    if isinstance(exc, NotFoundError):
        return 4404
    if isinstance(exc, ValidationError):
        return 4422
    return 1011


def _message_frame(kind: str, message: Message) -> Dict[str, Any]:
    return {"type": kind, "message": message.model_dump(mode="json")}


def _parse_cursor(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        cursor = int(raw)
    except ValueError:
        raise ValidationError("Cursor must be an integer", {"after": raw})
    if cursor < 0:
        raise ValidationError("Cursor must not be negative", {"after": raw})
    return cursor


@router.websocket("/conversations/{conversation_id}")
async def conversation_socket(websocket: WebSocket, conversation_id: str, chat: ChatServices = Depends(get_chat_services)):
    # browsers cannot set headers on a websocket handshake: token comes as ?token=...
    try:
        token = websocket.query_params.get("token")
        if not token:
            raise Unauthenticated()
        user_id = decode_access_token(token)["sub"]
        await chat.directory.get(conversation_id, user_id)
        cursor = _parse_cursor(websocket.query_params.get("after"))
    except ChatError as exc:
        await websocket.close(code=close_code_for(exc))
        return

    await websocket.accept()
    session = ChatSession(user_id, chat.store, chat.channel)
    try:
        history = await session.open(conversation_id, cursor)
        await websocket.send_json({"type": "history", "items": [m.model_dump(mode="json") for m in history]})
        tasks = [
            asyncio.create_task(_push(websocket, session)),
            asyncio.create_task(_receive(websocket, session)),
            asyncio.create_task(_heartbeat(websocket, get_settings().WS_HEARTBEAT_INTERVAL)),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None:
                raise exc
    except WebSocketDisconnect:
        logger.info("Viewer %s disconnected from %s", session.viewer, conversation_id)
    except ChatError as exc:
        logger.warning("Closing socket for %s on %s: %s", session.viewer, conversation_id, exc.message)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=close_code_for(exc))
    finally:
        await session.close()


async def _push(websocket: WebSocket, session: ChatSession) -> None:
    async for message in session.messages():
        await websocket.send_json(_message_frame("message", message))


async def _receive(websocket: WebSocket, session: ChatSession) -> None:
    while True:
        data = await websocket.receive_text()
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            frame = None
        kind = frame.get("type") if isinstance(frame, dict) else None

        if kind == "ping":
            await websocket.send_json({"type": "pong"})
            continue

        if kind == "send":
            try:
                message = await session.send(frame.get("content"))
            except (ValidationError, Unauthorized, NotFoundError, UnavailableError) as exc:
                await websocket.send_json({"type": "error", **exc.to_dict()})
                continue
            ack = _message_frame("ack", message)
            ack["client_message_id"] = frame.get("client_message_id")
            await websocket.send_json(ack)
            continue

        await websocket.send_json({"type": "error", **ValidationError("Invalid frame", {"frame": data[:200]}).to_dict()})


async def _heartbeat(websocket: WebSocket, interval: float) -> None:
    # a failed send is how a silently dropped connection gets noticed
    while True:
        await asyncio.sleep(interval)
        await websocket.send_json({"type": "heartbeat"})
