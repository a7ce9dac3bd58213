"""
Small administration commands against the SQLite store: seed users and
chats, and issue tokens for them.
"""

import asyncio
from typing import List

from LinkChat.config import config
from LinkChat.core.models import ChatType
from LinkChat.core.server import SQLiteChatStore, create_access_token


def add_user(user_id: str, username: str, avatar: str = "") -> None:
    store = SQLiteChatStore(config.SQLITE_DB_FILE)
    try:
        if store.create_user(user_id, username, avatar):
            print(f"User {user_id} ({username}) created.")
        else:
            print(f"User {user_id} or username {username} already exists.")
    finally:
        asyncio.run(store.close())


def add_chat(chat_id: str, members: List[str], chat_type: str = "private", name: str = None) -> None:
    store = SQLiteChatStore(config.SQLITE_DB_FILE)
    try:
        store.create_chat(chat_id, members, ChatType(chat_type), name)
        print(f"Chat {chat_id} created with {len(members)} member(s).")
    finally:
        asyncio.run(store.close())


def token(user_id: str, minutes: int = None) -> None:
    print(create_access_token(user_id, expire_minutes=minutes))
