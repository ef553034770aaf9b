"""Storage interfaces following Black Box Design principles."""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol


EVENT_PUT = "put"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"


@dataclass
class Document:
    """A stored document with store-assigned metadata."""

    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None  # ISO timestamp assigned by the store
    seq: int = 0  # Store-wide monotonic insertion counter

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "data": self.data, "created_at": self.created_at, "seq": self.seq}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            id=data["id"],
            data=data.get("data", {}),
            created_at=data.get("created_at"),
            seq=data.get("seq", 0),
        )


@dataclass
class StoreEvent:
    """Change notification for one document."""

    type: str  # put, update, delete
    collection: str
    doc_id: str
    document: Optional[Document] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "collection": self.collection,
            "doc_id": self.doc_id,
            "document": self.document.to_dict() if self.document else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoreEvent":
        document = data.get("document")
        return cls(
            type=data["type"],
            collection=data["collection"],
            doc_id=data["doc_id"],
            document=Document.from_dict(document) if document else None,
        )


class Subscription(Protocol):
    """Cancelable stream of change events."""

    def __aiter__(self) -> AsyncIterator[StoreEvent]:
        ...

    async def next_event(self, timeout: Optional[float] = None) -> Optional[StoreEvent]:
        """
        Wait for the next event.

        Returns:
            The event, or None if the timeout elapsed or the subscription closed
        """
        ...

    async def close(self) -> None:
        """Release the subscription. Never deletes data."""
        ...


class Store(Protocol):
    """
    Protocol for the shared document/collection store.

    Collections are path-like strings (``temp_query_results/<key>/rows``).
    Documents within a collection are listed in insertion order.
    """

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        """
        Create a document only if absent.

        Raises:
            DocumentExists: If the document already exists
        """
        ...

    async def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        """Create or overwrite a document. Keeps created_at/seq of an existing one."""
        ...

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Document:
        """
        Merge changes into an existing document.

        When ``expected`` is given, the update is applied only if every expected
        field currently holds the expected value (compare-and-set).

        Raises:
            KeyError: If the document does not exist
            ClaimConflict: If an expected field does not match
        """
        ...

    async def list(
        self, collection: str, where: Optional[Dict[str, Any]] = None
    ) -> List[Document]:
        """List documents in insertion order, optionally filtered by field equality."""
        ...

    async def delete(self, collection: str, doc_id: str) -> bool:
        ...

    async def delete_collection(self, collection: str) -> int:
        """Delete every document in a collection. Returns number deleted."""
        ...

    async def subscribe(self, collection: str, doc_id: Optional[str] = None) -> Subscription:
        """Subscribe to changes in a collection, or to one document in it."""
        ...

    async def ping(self) -> bool:
        ...
