"""
Result channel module.

A result channel is the temporary, isolated holding area for one command's
output rows. Layout in the shared store:

- temp_query_results/{key}                channel identity + provenance
- temp_query_results/{key}/rows           insertion-ordered row records
- temp_query_results/{key}/meta           provenance and completion documents
- temp_query_results_tombstones/{key}     marker left by teardown

The key is derived from (command_id, principal_id), so concurrent requests,
or two executors racing on one command id, never share a channel.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Union

from queryrelay.errors import (
    ChannelClosed,
    ChannelFailure,
    ChannelNotFound,
    ChannelPermissionDenied,
    ClaimConflict,
    DocumentExists,
    InvalidRequest,
    PartialTeardownFailure,
)
from queryrelay.modules.storage import Document, Store, Subscription

logger = logging.getLogger("queryrelay.channel")

CHANNELS_COLLECTION = "temp_query_results"
TOMBSTONES_COLLECTION = "temp_query_results_tombstones"
LOCATOR_PREFIX = f"{CHANNELS_COLLECTION}/"

STATE_OPEN = "open"
STATE_FINALIZED = "finalized"

# Report owner for a sweep across every principal
ALL_PRINCIPALS = "*"

# Characters that would make two different (command, principal) pairs collide
RESERVED_ID_CHARS = (":", "/")


def derive_key(command_id: str, principal_id: str) -> str:
    """Canonical channel key for a command executed by a principal."""
    if not command_id or not principal_id:
        raise InvalidRequest("Channel key requires both command id and principal id")
    for value in (command_id, principal_id):
        if any(c in value for c in RESERVED_ID_CHARS):
            raise InvalidRequest(f"Command and principal ids must not contain ':' or '/': {value}")
    return f"{command_id}:{principal_id}"


def parse_locator(locator: str) -> str:
    """
    Extract the channel key from a result locator.

    Accepts ``temp_query_results/<key>`` or a bare key.

    Raises:
        ChannelNotFound: If the locator is empty or malformed
    """
    if not locator or not locator.strip():
        raise ChannelNotFound(locator or "", reason="empty locator")
    locator = locator.strip()
    if locator.startswith(LOCATOR_PREFIX):
        locator = locator[len(LOCATOR_PREFIX):]
    if not locator or "/" in locator:
        raise ChannelNotFound(locator, reason="malformed locator")
    return locator


@dataclass
class ChannelHandle:
    """Address of one result channel."""

    key: str
    command_id: Optional[str] = None
    principal_id: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def locator(self) -> str:
        return f"{LOCATOR_PREFIX}{self.key}"

    @property
    def rows_collection(self) -> str:
        return f"{CHANNELS_COLLECTION}/{self.key}/rows"

    @property
    def meta_collection(self) -> str:
        return f"{CHANNELS_COLLECTION}/{self.key}/meta"

    @classmethod
    def for_command(cls, command_id: str, principal_id: str) -> "ChannelHandle":
        return cls(key=derive_key(command_id, principal_id), command_id=command_id, principal_id=principal_id)

    @classmethod
    def from_document(cls, document: Document) -> "ChannelHandle":
        return cls(
            key=document.id,
            command_id=document.data.get("originating_command_id"),
            principal_id=document.data.get("originating_principal_id"),
            created_at=document.created_at,
        )


@dataclass
class TeardownReport:
    """Outcome of a bulk teardown."""

    principal_id: str
    succeeded: List[str] = field(default_factory=list)
    failures: List[ChannelFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """Raise PartialTeardownFailure if any channel failed."""
        if self.failures:
            raise PartialTeardownFailure(self.principal_id, list(self.succeeded), list(self.failures))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "succeeded": self.succeeded,
            "failures": [{"channel_key": f.channel_key, "error": f.error} for f in self.failures],
        }


ChannelRef = Union[ChannelHandle, str]


class ResultChannelModule:
    def __init__(self, store: Store):
        """
        Initialize result channel module.

        Args:
            store: Shared store
        """
        self.store = store

    def _handle(self, ref: ChannelRef) -> ChannelHandle:
        if isinstance(ref, ChannelHandle):
            return ref
        return ChannelHandle(key=parse_locator(ref))

    async def _is_tombstoned(self, key: str) -> bool:
        return await self.store.get(TOMBSTONES_COLLECTION, key) is not None

    # Executor side

    async def create_for_command(self, command_id: str, principal_id: str) -> ChannelHandle:
        """
        Create the result channel for a command executed by a principal.

        Args:
            command_id: Originating command record id
            principal_id: Executing principal

        Returns:
            Handle for the new channel

        Raises:
            ChannelClosed: If the key was torn down before
            ClaimConflict: If a channel already exists under the key

        Logic:
        1. Refuse tombstoned keys (teardown is terminal)
        2. Create-if-absent the channel identity with provenance
        3. Write the provenance metadata document
        4. Re-check the tombstone; a teardown that ran meanwhile wins
        """
        handle = ChannelHandle.for_command(command_id, principal_id)

        if await self._is_tombstoned(handle.key):
            raise ChannelClosed(handle.key)

        provenance = {
            "originating_command_id": command_id,
            "originating_principal_id": principal_id,
            "state": STATE_OPEN,
        }
        try:
            document = await self.store.create(CHANNELS_COLLECTION, handle.key, provenance)
        except DocumentExists as e:
            raise ClaimConflict(f"Result channel {handle.key} already exists") from e

        handle.created_at = document.created_at
        await self.store.put(
            handle.meta_collection,
            "provenance",
            {
                "originating_command_id": command_id,
                "originating_principal_id": principal_id,
                "created_at": document.created_at,
            },
        )

        if await self._is_tombstoned(handle.key):
            await self.store.delete_collection(handle.meta_collection)
            await self.store.delete(CHANNELS_COLLECTION, handle.key)
            raise ChannelClosed(handle.key)

        logger.info(f"Created result channel {handle.key}")
        return handle

    async def append_row(self, handle: ChannelHandle, row: Dict[str, Any]) -> None:
        """
        Append one row record to a channel.

        Creates the channel implicitly when the handle names a command and
        principal and no channel exists yet. A row that lands while the
        channel is being torn down is removed again.

        Raises:
            InvalidRequest: If the row is not a mapping
            ChannelClosed: If the channel was torn down
            ChannelNotFound: If the channel does not exist and cannot be created
        """
        if not isinstance(row, dict):
            raise InvalidRequest(f"Row must be a mapping, got {type(row).__name__}")

        if await self._is_tombstoned(handle.key):
            raise ChannelClosed(handle.key)

        if await self.store.get(CHANNELS_COLLECTION, handle.key) is None:
            if not (handle.command_id and handle.principal_id):
                raise ChannelNotFound(handle.key)
            try:
                await self.create_for_command(handle.command_id, handle.principal_id)
            except ClaimConflict:
                # Created concurrently by the same writer; safe to continue
                pass

        row_id = uuid.uuid4().hex
        await self.store.create(handle.rows_collection, row_id, dict(row))

        # Teardown tombstones before deleting, so either it removes this row or we do
        if await self._is_tombstoned(handle.key):
            await self.store.delete(handle.rows_collection, row_id)
            raise ChannelClosed(handle.key)

    async def append_rows(self, handle: ChannelHandle, rows: List[Dict[str, Any]]) -> int:
        count = 0
        for row in rows:
            await self.append_row(handle, row)
            count += 1
        return count

    async def finalize(self, handle: ChannelHandle, row_count: Optional[int] = None) -> None:
        """Mark a channel complete. Optional; rows are readable before this."""
        if row_count is None:
            row_count = len(await self.store.list(handle.rows_collection))
        finalized_at = datetime.now(UTC).isoformat()

        try:
            await self.store.update(
                CHANNELS_COLLECTION,
                handle.key,
                {"state": STATE_FINALIZED, "row_count": row_count, "finalized_at": finalized_at},
            )
        except KeyError as e:
            raise ChannelNotFound(handle.key) from e

        await self.store.put(
            handle.meta_collection, "completion", {"row_count": row_count, "finalized_at": finalized_at}
        )
        logger.info(f"Finalized result channel {handle.key} ({row_count} rows)")

    # Consumer side

    async def attach(
        self,
        ref: ChannelRef,
        command_id: Optional[str] = None,
        principal_id: Optional[str] = None,
    ) -> ChannelHandle:
        """
        Resolve a channel reference to a live channel.

        Args:
            ref: Handle, locator or bare key
            command_id: If given, the channel must originate from this command
            principal_id: If given, the channel must belong to this principal

        Raises:
            ChannelNotFound: Absent or torn-down channel
            ChannelPermissionDenied: Channel belongs to another command/principal
        """
        key = self._handle(ref).key

        document = await self.store.get(CHANNELS_COLLECTION, key)
        if document is None or await self._is_tombstoned(key):
            raise ChannelNotFound(key)

        handle = ChannelHandle.from_document(document)
        if command_id is not None and handle.command_id != command_id:
            raise ChannelPermissionDenied(key)
        if principal_id is not None and handle.principal_id != principal_id:
            raise ChannelPermissionDenied(key)
        return handle

    async def exists(self, ref: ChannelRef) -> bool:
        try:
            await self.attach(ref)
            return True
        except ChannelNotFound:
            return False

    async def list_rows(self, ref: ChannelRef) -> List[Dict[str, Any]]:
        """Rows in insertion order. Empty for an absent or torn-down channel."""
        handle = self._handle(ref)
        documents = await self.store.list(handle.rows_collection)
        return [d.data for d in documents]

    async def get_metadata(self, ref: ChannelRef) -> Dict[str, Dict[str, Any]]:
        handle = self._handle(ref)
        return {d.id: d.data for d in await self.store.list(handle.meta_collection)}

    async def subscribe_rows(self, ref: ChannelRef) -> Subscription:
        return await self.store.subscribe(self._handle(ref).rows_collection)

    async def teardown(self, ref: ChannelRef) -> bool:
        """
        Delete all rows, metadata and the channel identity.

        Safe to call any number of times; later calls are no-ops.

        Returns:
            True if anything was deleted

        Logic:
        1. Record the tombstone first so no writer can recreate the key
        2. Delete rows and metadata collections
        3. Delete the channel identity
        """
        handle = self._handle(ref)

        if not await self._is_tombstoned(handle.key):
            await self.store.put(
                TOMBSTONES_COLLECTION, handle.key, {"torn_down_at": datetime.now(UTC).isoformat()}
            )

        deleted_rows = await self.store.delete_collection(handle.rows_collection)
        deleted_meta = await self.store.delete_collection(handle.meta_collection)
        deleted_identity = await self.store.delete(CHANNELS_COLLECTION, handle.key)

        removed = deleted_identity or deleted_rows > 0 or deleted_meta > 0
        if removed:
            logger.info(f"Tore down result channel {handle.key} ({deleted_rows} rows)")
        return removed

    # Discovery and bulk operations

    async def find_by_provenance(self, command_id: str, principal_id: str) -> List[ChannelHandle]:
        """Channels whose provenance metadata names this command and principal."""
        documents = await self.store.list(
            CHANNELS_COLLECTION,
            where={"originating_command_id": command_id, "originating_principal_id": principal_id},
        )
        return [ChannelHandle.from_document(d) for d in documents]

    async def channels_for_principal(self, principal_id: str) -> List[ChannelHandle]:
        """Channels whose derived key or metadata references the principal."""
        handles = []
        for document in await self.store.list(CHANNELS_COLLECTION):
            key_principal = document.id.split(":", 1)[1] if ":" in document.id else None
            if (
                document.data.get("originating_principal_id") == principal_id
                or key_principal == principal_id
            ):
                handles.append(ChannelHandle.from_document(document))
        return handles

    async def latest_for_principal(self, principal_id: str) -> Optional[ChannelHandle]:
        """Most recently created channel for a principal, by creation time."""
        documents = await self.store.list(
            CHANNELS_COLLECTION, where={"originating_principal_id": principal_id}
        )
        if not documents:
            return None
        latest = max(documents, key=lambda d: (d.created_at or "", d.seq))
        return ChannelHandle.from_document(latest)

    async def teardown_for_principal(self, principal_id: str) -> TeardownReport:
        """
        Tear down every channel belonging to a principal.

        Each channel is torn down independently; a failure on one is recorded
        in the report and does not stop the others.

        Returns:
            TeardownReport with per-channel outcome
        """
        report = TeardownReport(principal_id=principal_id)
        await self._teardown_each(await self.channels_for_principal(principal_id), report)

        logger.info(
            f"Bulk teardown for {principal_id}: "
            f"{len(report.succeeded)} deleted, {len(report.failures)} failed"
        )
        return report

    async def teardown_all(self) -> TeardownReport:
        """Tear down every result channel in the store, whoever owns it."""
        handles = [ChannelHandle.from_document(d) for d in await self.store.list(CHANNELS_COLLECTION)]
        report = TeardownReport(principal_id=ALL_PRINCIPALS)
        await self._teardown_each(handles, report)

        logger.info(
            f"Sweep of all result channels: "
            f"{len(report.succeeded)} deleted, {len(report.failures)} failed"
        )
        return report

    async def _teardown_each(self, handles: List[ChannelHandle], report: TeardownReport) -> None:
        for handle in handles:
            try:
                await self.teardown(handle)
                report.succeeded.append(handle.key)
            except Exception as e:
                logger.error(f"Failed to tear down channel {handle.key}: {e}")
                report.failures.append(ChannelFailure(channel_key=handle.key, error=str(e)))
