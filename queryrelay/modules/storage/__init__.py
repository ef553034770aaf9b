"""
Storage Module - Black Box Interface

Purpose: Abstract the shared durable store both sides coordinate through
Interface: get(), create(), put(), update(), list(), delete(), delete_collection(), subscribe()
Hidden: Redis specifics, key layout, pub/sub, serialization

Can be replaced with any document store offering conditional writes and
change notification without affecting other modules.
"""

import os
from typing import Optional

import redis.asyncio as redis

from .interfaces import Document, Store, StoreEvent, Subscription
from .memory import InMemoryStore
from .redis_store import RedisStore


class StorageModule:
    """Black box storage abstraction."""

    def __init__(self, connection_url: str = None, password: Optional[str] = None, backend: str = "redis"):
        """Initialize storage with connection URL."""
        self.url = connection_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.password = password
        self.backend = backend
        self._client = None
        self._store = None

    async def connect(self) -> Store:
        """Get store for the configured backend."""
        if self._store:
            return self._store

        if self.backend == "memory":
            self._store = InMemoryStore()
        else:
            self._client = redis.from_url(self.url, password=self.password, decode_responses=True)
            self._store = RedisStore(self._client)
        return self._store

    async def disconnect(self):
        """Close storage connection."""
        if self._client:
            await self._client.close()
            self._client = None
        self._store = None


__all__ = [
    "Document",
    "InMemoryStore",
    "RedisStore",
    "StorageModule",
    "Store",
    "StoreEvent",
    "Subscription",
]
