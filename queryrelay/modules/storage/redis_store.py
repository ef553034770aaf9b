"""
Redis implementation of the shared store.

Key layout:
- store:doc:{collection}:{doc_id}  JSON document envelope
- store:index:{collection}         sorted set of doc ids scored by insertion seq
- store:seq                        store-wide insertion counter
- store:events:{collection}        pub/sub channel for change notification
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from queryrelay.errors import ClaimConflict, DocumentExists, TransientStoreError

from .interfaces import EVENT_DELETE, EVENT_PUT, EVENT_UPDATE, Document, StoreEvent

logger = logging.getLogger("queryrelay.storage.redis")


@asynccontextmanager
async def _translate_errors(operation: str):
    """Map Redis connectivity failures onto TransientStoreError."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as e:
        logger.warning(f"Redis {operation} failed: {e}")
        raise TransientStoreError(f"{operation} failed: {e}") from e


class RedisSubscription:
    """Pub/sub backed subscription to one collection (optionally one document)."""

    def __init__(self, pubsub, channel: str, doc_id: Optional[str]):
        self._pubsub = pubsub
        self.channel = channel
        self.doc_id = doc_id
        self.closed = False

    async def next_event(self, timeout: Optional[float] = None) -> Optional[StoreEvent]:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while not self.closed:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            if remaining == 0.0:
                return None

            # get_message polls at most one second at a time so close() is honoured
            wait = 1.0 if remaining is None else min(1.0, remaining)
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=wait)
            if not message or message.get("type") != "message":
                continue

            data = message["data"]
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                event = StoreEvent.from_dict(json.loads(data))
            except (ValueError, KeyError) as e:
                logger.warning(f"Dropping malformed event on {self.channel}: {e}")
                continue

            if self.doc_id is None or event.doc_id == self.doc_id:
                return event

        return None

    def __aiter__(self):
        return self

    async def __anext__(self) -> StoreEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        finally:
            await self._pubsub.close()


class RedisStore:
    """Store backed by an async Redis client."""

    def __init__(self, redis_client):
        """
        Initialize Redis store.

        Args:
            redis_client: Async Redis client (decode_responses=True)
        """
        self.redis = redis_client

    def _doc_key(self, collection: str, doc_id: str) -> str:
        return f"store:doc:{collection}:{doc_id}"

    def _index_key(self, collection: str) -> str:
        return f"store:index:{collection}"

    def _events_channel(self, collection: str) -> str:
        return f"store:events:{collection}"

    def _decode(self, doc_id: str, raw) -> Optional[Document]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        envelope = json.loads(raw)
        return Document(
            id=doc_id,
            data=envelope.get("data", {}),
            created_at=envelope.get("created_at"),
            seq=envelope.get("seq", 0),
        )

    def _encode(self, document: Document) -> str:
        return json.dumps(
            {"data": document.data, "created_at": document.created_at, "seq": document.seq},
            default=str,
        )

    async def _publish(self, event: StoreEvent) -> None:
        try:
            await self.redis.publish(
                self._events_channel(event.collection), json.dumps(event.to_dict(), default=str)
            )
        except (RedisConnectionError, RedisTimeoutError) as e:
            # Subscribers fall back to re-reading state; the write itself succeeded
            logger.warning(f"Failed to publish {event.type} for {event.collection}/{event.doc_id}: {e}")

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        async with _translate_errors("get"):
            raw = await self.redis.get(self._doc_key(collection, doc_id))
        return self._decode(doc_id, raw)

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        """
        Create a document only if absent.

        Logic:
        1. Allocate insertion sequence number
        2. SET NX the document envelope (atomic create-if-absent)
        3. Add to the collection index
        4. Publish change event
        """
        async with _translate_errors("create"):
            seq = await self.redis.incr("store:seq")
            document = Document(
                id=doc_id, data=data, created_at=datetime.now(UTC).isoformat(), seq=seq
            )
            created = await self.redis.set(
                self._doc_key(collection, doc_id), self._encode(document), nx=True
            )
            if not created:
                raise DocumentExists(f"{collection}/{doc_id} already exists")
            await self.redis.zadd(self._index_key(collection), {doc_id: seq})

        await self._publish(StoreEvent(EVENT_PUT, collection, doc_id, document))
        return document

    async def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        async with _translate_errors("put"):
            existing = self._decode(doc_id, await self.redis.get(self._doc_key(collection, doc_id)))
            if existing:
                document = Document(
                    id=doc_id, data=data, created_at=existing.created_at, seq=existing.seq
                )
            else:
                seq = await self.redis.incr("store:seq")
                document = Document(
                    id=doc_id, data=data, created_at=datetime.now(UTC).isoformat(), seq=seq
                )
            await self.redis.set(self._doc_key(collection, doc_id), self._encode(document))
            await self.redis.zadd(self._index_key(collection), {doc_id: document.seq}, nx=True)

        await self._publish(StoreEvent(EVENT_PUT, collection, doc_id, document))
        return document

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Document:
        """
        Merge changes into a document using optimistic locking.

        Logic:
        1. WATCH the document key
        2. Read and compare expected fields
        3. MULTI/SET/EXEC; a concurrent write aborts with WatchError
        """
        key = self._doc_key(collection, doc_id)

        async with _translate_errors("update"):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    document = self._decode(doc_id, await pipe.get(key))
                    if document is None:
                        raise KeyError(f"{collection}/{doc_id}")

                    for field_name, value in (expected or {}).items():
                        if document.data.get(field_name) != value:
                            raise ClaimConflict(
                                f"{collection}/{doc_id}: expected {field_name}={value!r}, "
                                f"found {document.data.get(field_name)!r}"
                            )

                    document.data.update(changes)
                    pipe.multi()
                    pipe.set(key, self._encode(document))
                    await pipe.execute()
                except WatchError as e:
                    raise ClaimConflict(f"{collection}/{doc_id} modified concurrently") from e

        await self._publish(StoreEvent(EVENT_UPDATE, collection, doc_id, document))
        return document

    async def list(
        self, collection: str, where: Optional[Dict[str, Any]] = None
    ) -> List[Document]:
        async with _translate_errors("list"):
            doc_ids = await self.redis.zrange(self._index_key(collection), 0, -1)
            if not doc_ids:
                return []
            doc_ids = [d.decode("utf-8") if isinstance(d, bytes) else d for d in doc_ids]
            raws = await self.redis.mget([self._doc_key(collection, d) for d in doc_ids])

        documents = []
        for doc_id, raw in zip(doc_ids, raws):
            document = self._decode(doc_id, raw)
            if document is None:
                # Index entry outlived its document
                continue
            if where and not all(document.data.get(k) == v for k, v in where.items()):
                continue
            documents.append(document)
        return documents

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with _translate_errors("delete"):
            deleted = await self.redis.delete(self._doc_key(collection, doc_id))
            await self.redis.zrem(self._index_key(collection), doc_id)

        if deleted:
            await self._publish(StoreEvent(EVENT_DELETE, collection, doc_id))
        return deleted > 0

    async def delete_collection(self, collection: str) -> int:
        async with _translate_errors("delete_collection"):
            doc_ids = await self.redis.zrange(self._index_key(collection), 0, -1)
            doc_ids = [d.decode("utf-8") if isinstance(d, bytes) else d for d in doc_ids]
            deleted = 0
            if doc_ids:
                deleted = await self.redis.delete(
                    *[self._doc_key(collection, d) for d in doc_ids]
                )
            await self.redis.delete(self._index_key(collection))

        for doc_id in doc_ids:
            await self._publish(StoreEvent(EVENT_DELETE, collection, doc_id))
        return deleted

    async def subscribe(self, collection: str, doc_id: Optional[str] = None) -> RedisSubscription:
        channel = self._events_channel(collection)
        pubsub = self.redis.pubsub()
        async with _translate_errors("subscribe"):
            await pubsub.subscribe(channel)
        logger.debug(f"Subscribed to channel: {channel}")
        return RedisSubscription(pubsub, channel, doc_id)

    async def ping(self) -> bool:
        async with _translate_errors("ping"):
            return bool(await self.redis.ping())


__all__ = ["RedisStore", "RedisSubscription"]
