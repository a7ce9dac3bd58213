"""
Server startup module for LinkChat.
Provides the entry points for starting the realtime server and the HTTP API.
"""

import asyncio
import logging

import uvicorn

from LinkChat.api import create_app
from LinkChat.config import config
from LinkChat.core.logging import auto_configure
from LinkChat.core.server import SQLiteChatStore, create_server

logger = logging.getLogger(__name__)


async def _run(host: str, port: int, api_port: int, realtime: bool = True, http: bool = True) -> None:
    store = SQLiteChatStore(config.SQLITE_DB_FILE)
    manager = create_server(store)
    try:
        if realtime:
            await manager.start(host, port)
        if http:
            # same loop as the manager: HTTP deletes emit socket events
            http_server = uvicorn.Server(uvicorn.Config(
                create_app(manager), host=host, port=api_port, log_config=None
            ))
            await http_server.serve()
        else:
            await asyncio.Future()
    finally:
        if realtime:
            await manager.stop()
        await store.close()


def server(host=None, port=None, api_port=None, srv_only=False):
    """
    Start the realtime server and the HTTP API.

    Args:
        host (str): Address to bind (default: config.DEFAULT_HOST)
        port (int): Realtime server port (default: config.DEFAULT_SERVER_PORT)
        api_port (int): HTTP API port (default: config.DEFAULT_API_PORT)
        srv_only (bool): If True, serve only the realtime server.
    """
    auto_configure()
    host = host or config.DEFAULT_HOST
    try:
        asyncio.run(_run(
            host,
            port or config.DEFAULT_SERVER_PORT,
            api_port or config.DEFAULT_API_PORT,
            http=not srv_only,
        ))
    except KeyboardInterrupt:
        logger.info("Closed by user.")


def api(host=None, port=None):
    """
    Start only the HTTP API.

    Args:
        host (str): Address to bind (default: config.DEFAULT_HOST)
        port (int): HTTP API port (default: config.DEFAULT_API_PORT)
    """
    auto_configure()
    try:
        asyncio.run(_run(
            host or config.DEFAULT_HOST,
            config.DEFAULT_SERVER_PORT,
            port or config.DEFAULT_API_PORT,
            realtime=False,
        ))
    except KeyboardInterrupt:
        logger.info("Closed by user.")
