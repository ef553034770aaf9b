"""
In-process implementation of the shared store.

Used by tests and single-process deployments. Behaves like RedisStore:
insertion-ordered collections, create-if-absent, compare-and-set updates,
and per-collection change notification.
"""

import asyncio
import copy
import logging
from collections import OrderedDict
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from queryrelay.errors import ClaimConflict, DocumentExists

from .interfaces import EVENT_DELETE, EVENT_PUT, EVENT_UPDATE, Document, StoreEvent

logger = logging.getLogger("queryrelay.storage.memory")


class MemorySubscription:
    """Queue-backed subscription to an InMemoryStore collection."""

    def __init__(self, store: "InMemoryStore", collection: str, doc_id: Optional[str]):
        self._store = store
        self.collection = collection
        self.doc_id = doc_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, event: StoreEvent) -> bool:
        if event.collection != self.collection:
            return False
        return self.doc_id is None or event.doc_id == self.doc_id

    def deliver(self, event: StoreEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[StoreEvent]:
        if self.closed:
            return None
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        # None is the close sentinel
        return event

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
        self._queue.put_nowait(None)
        self._store._unsubscribe(self)


class InMemoryStore:
    """Dictionary-backed store with asyncio change notification."""

    def __init__(self):
        self._collections: Dict[str, "OrderedDict[str, Document]"] = {}
        self._subscriptions: List[MemorySubscription] = []
        self._seq = 0
        self._lock = asyncio.Lock()

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _now(self) -> str:
        return datetime.now(UTC).isoformat()

    def _publish(self, event: StoreEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)

    def _unsubscribe(self, subscription: MemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        document = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(document) if document else None

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        async with self._lock:
            documents = self._collections.setdefault(collection, OrderedDict())
            if doc_id in documents:
                raise DocumentExists(f"{collection}/{doc_id} already exists")
            document = Document(
                id=doc_id, data=copy.deepcopy(data), created_at=self._now(), seq=self._next_seq()
            )
            documents[doc_id] = document
        self._publish(StoreEvent(EVENT_PUT, collection, doc_id, copy.deepcopy(document)))
        return copy.deepcopy(document)

    async def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        async with self._lock:
            documents = self._collections.setdefault(collection, OrderedDict())
            existing = documents.get(doc_id)
            document = Document(
                id=doc_id,
                data=copy.deepcopy(data),
                created_at=existing.created_at if existing else self._now(),
                seq=existing.seq if existing else self._next_seq(),
            )
            documents[doc_id] = document
        self._publish(StoreEvent(EVENT_PUT, collection, doc_id, copy.deepcopy(document)))
        return copy.deepcopy(document)

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Document:
        async with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            if document is None:
                raise KeyError(f"{collection}/{doc_id}")
            for key, value in (expected or {}).items():
                if document.data.get(key) != value:
                    raise ClaimConflict(
                        f"{collection}/{doc_id}: expected {key}={value!r}, "
                        f"found {document.data.get(key)!r}"
                    )
            document.data.update(copy.deepcopy(changes))
            snapshot = copy.deepcopy(document)
        self._publish(StoreEvent(EVENT_UPDATE, collection, doc_id, copy.deepcopy(snapshot)))
        return snapshot

    async def list(
        self, collection: str, where: Optional[Dict[str, Any]] = None
    ) -> List[Document]:
        documents = list(self._collections.get(collection, {}).values())
        if where:
            documents = [
                d for d in documents if all(d.data.get(k) == v for k, v in where.items())
            ]
        return [copy.deepcopy(d) for d in documents]

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._lock:
            documents = self._collections.get(collection)
            if not documents or doc_id not in documents:
                return False
            del documents[doc_id]
            if not documents:
                del self._collections[collection]
        self._publish(StoreEvent(EVENT_DELETE, collection, doc_id))
        return True

    async def delete_collection(self, collection: str) -> int:
        async with self._lock:
            documents = self._collections.pop(collection, None) or {}
        for doc_id in documents:
            self._publish(StoreEvent(EVENT_DELETE, collection, doc_id))
        return len(documents)

    async def subscribe(self, collection: str, doc_id: Optional[str] = None) -> MemorySubscription:
        subscription = MemorySubscription(self, collection, doc_id)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {collection}/{doc_id or '*'}")
        return subscription

    async def ping(self) -> bool:
        return True

    def collections(self) -> List[str]:
        """Names of non-empty collections (test and admin helper)."""
        return list(self._collections.keys())
