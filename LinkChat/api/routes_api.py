# Standard library imports
import logging
import math
from typing import Any, Dict, List

# Third-party imports
import jwt
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

# Local imports
from LinkChat import __version__ as __main_version__
from LinkChat.core.errors import ChatCoreError
from LinkChat.core.server.auth import decode_user_id
from LinkChat.core.server.websocket_manager import RealtimeManager

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    version: str
    online_users: int
    connections: int


class MessagePage(BaseModel):
    messages: List[Dict[str, Any]]
    page: int
    pages: int
    total: int


class ReadReceipt(BaseModel):
    chat_id: str
    marked: int


def create_app(manager: RealtimeManager) -> FastAPI:
    """
    Build the HTTP API around a realtime manager.

    The app must be served on the same event loop as the manager: the
    delete and read endpoints emit socket events through it.
    """
    app = FastAPI(title="LinkChat API", version=__main_version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    store = manager.store

    @app.exception_handler(ChatCoreError)
    async def chat_core_error_handler(request: Request, exc: ChatCoreError):
        return JSONResponse(status_code=exc.http_status, content={"success": False, **exc.to_payload()})

    async def get_current_user(request: Request) -> str:
        """Extract and validate current user from Authorization bearer token."""
        auth = request.headers.get("Authorization")
        if not auth or not auth.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="No valid authentication token provided")
        token = auth.split(" ", 1)[1]
        try:
            user_id = decode_user_id(token)
        except jwt.PyJWTError:
            raise HTTPException(status_code=401, detail="Invalid token")
        if not user_id or await store.get_user(user_id) is None:
            raise HTTPException(status_code=401, detail="Invalid token")
        return user_id

    @app.get("/api/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok",
            version=__main_version__,
            online_users=len(manager.presence),
            connections=len(manager.connections),
        )

    @app.get("/api/users/online")
    async def online_users(user_id: str = Depends(get_current_user)):
        users = []
        for uid in manager.online_user_ids():
            profile = await store.get_user(uid)
            if profile is not None:
                users.append(profile.to_dict())
        return {"userIds": manager.online_user_ids(), "users": users}

    @app.get("/api/chats/{chat_id}/messages", response_model=MessagePage)
    async def chat_messages(
        chat_id: str,
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=200),
        user_id: str = Depends(get_current_user)
    ):
        await manager.messages.ensure_participant(user_id, chat_id)
        total = await store.count_messages(chat_id)
        records = await store.list_messages(chat_id, offset=(page - 1) * limit, limit=limit)
        # stored newest first, returned in chronological order
        messages = [await manager.messages.populate(r) for r in reversed(records)]
        return MessagePage(messages=messages, page=page, pages=math.ceil(total / limit), total=total)

    @app.put("/api/messages/read/{chat_id}", response_model=ReadReceipt)
    async def mark_read(chat_id: str, user_id: str = Depends(get_current_user)):
        marked = await manager.messages.mark_read(user_id, chat_id)
        return ReadReceipt(chat_id=chat_id, marked=marked)

    @app.delete("/api/messages/{message_id}")
    async def delete_message(message_id: str, user_id: str = Depends(get_current_user)):
        record = await manager.messages.delete_message(user_id, message_id)
        return {"success": True, "message": await manager.messages.populate(record)}

    return app
