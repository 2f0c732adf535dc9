"""
bookstore.connection
====================

Scoped access to the books collection. Each opener is an async context
manager that yields a collection handle and closes its client exactly once
when the block exits, whether it finished or raised.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from pymongo import AsyncMongoClient

from .fake_mongo import FakeMongoClient
from .settings import DEFAULT_SETTINGS, Settings
from .storage_backends import StorageBackend

logger = logging.getLogger(__name__)


@asynccontextmanager
async def connect_mongo(settings: Settings = DEFAULT_SETTINGS) -> AsyncIterator[Any]:
    """Connect to the MongoDB server at ``settings.uri``.

    The server is pinged before the collection is handed out, so an
    unreachable server fails here rather than at the first query.
    """
    client: AsyncMongoClient = AsyncMongoClient(settings.uri)
    try:
        await client.admin.command("ping")
        logger.info("connected to %s", settings.uri)
        yield client[settings.database][settings.collection]
    finally:
        await client.close()
        logger.info("connection to %s closed", settings.uri)


@asynccontextmanager
async def connect_fake(
    backend: StorageBackend, settings: Settings = DEFAULT_SETTINGS
) -> AsyncIterator[Any]:
    """Open the books collection of a file-backed store living in ``backend``."""
    client = FakeMongoClient(backend)
    try:
        collection = await client[settings.database].get_collection(settings.collection)
        logger.info("opened file-backed store %s", collection.full_name)
        yield collection
    finally:
        await client.close()
        logger.info("file-backed store closed")
