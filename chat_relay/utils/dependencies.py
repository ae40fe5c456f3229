from typing import Optional, Protocol, Union

from fastapi import HTTPException, Request, WebSocket, status


USER_ID_HEADER = "X-User-Id"


class AuthProvider(Protocol):

    def current_user_id(self, connection: Union[Request, WebSocket]) -> Optional[str]:
        ...


class HeaderAuthProvider:
    """Trusts the user id an authenticating gateway put on the request."""

    def current_user_id(self, connection: Union[Request, WebSocket]) -> Optional[str]:
        user_id = connection.headers.get(USER_ID_HEADER)
        if not user_id and isinstance(connection, WebSocket):
            # browsers cannot set headers on a websocket handshake
            user_id = connection.query_params.get("user_id")
        return user_id.strip() if user_id and user_id.strip() else None


def get_current_user_id(request: Request) -> str:
    user_id = request.app.state.auth.current_user_id(request)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user_id


def get_chat_service(request: Request):
    return request.app.state.chat_service


def get_delivery(request: Request):
    return request.app.state.delivery


def get_user_repo(request: Request):
    return request.app.state.user_repo
