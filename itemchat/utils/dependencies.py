from typing import Optional

from fastapi import Depends
from fastapi.requests import HTTPConnection
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from itemchat.core.exceptions import Unauthenticated
from itemchat.services import ChatServices
from itemchat.utils.security import decode_access_token


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> str:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated()
    return decode_access_token(credentials.credentials)["sub"]


def get_chat_services(connection: HTTPConnection) -> ChatServices:
    return connection.app.state.chat
