"""
Status observer.

Watches a command record until it reaches a terminal status, then locates
the result channel for row-producing successes and delivers its rows.

Two watch modes:
- push: store subscription, with a periodic re-read so a dropped
  notification never stalls the watch
- pull: bounded-interval re-read, capped by a maximum duration

Both honour a CancellationToken. Cancelling releases the subscription and
never deletes data.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from queryrelay.errors import (
    ChannelNotFound,
    CommandNotFound,
    DiscoveryAmbiguous,
    ExecutionFailed,
    InvalidRequest,
    TransientStoreError,
    WatchTimeout,
)
from queryrelay.modules.channel import ChannelHandle, ResultChannelModule, derive_key
from queryrelay.modules.commands import (
    COMMANDS_COLLECTION,
    CommandRecord,
    CommandStatus,
    CommandUpdate,
    ResultKind,
)
from queryrelay.modules.storage import Store
from queryrelay.modules.storage.interfaces import EVENT_DELETE

logger = logging.getLogger("queryrelay.observer")

WATCH_PUSH = "push"
WATCH_PULL = "pull"


class CancellationToken:
    """Cooperative cancellation for watches and row subscriptions."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to timeout. Returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._event.is_set()


class ColumnTracker:
    """Ordered union of column names seen so far."""

    def __init__(self):
        self.columns: List[str] = []

    def observe(self, row: Dict[str, Any]) -> bool:
        """Record a row's columns. Returns True if the column set grew."""
        grew = False
        for name in row.keys():
            if name not in self.columns:
                self.columns.append(name)
                grew = True
        return grew


class RowSubscription:
    """
    Live, append-only row sequence for an attached result channel.

    Existing rows are delivered first, then rows appended later. Rows with
    differing column sets are tolerated; ``columns`` is recomputed whenever
    a row introduces a new column.
    """

    def __init__(
        self,
        store: Store,
        handle: ChannelHandle,
        cancel: Optional[CancellationToken] = None,
        resync_interval: float = 2.0,
    ):
        self.store = store
        self.handle = handle
        self.cancel = cancel or CancellationToken()
        self.resync_interval = resync_interval
        self.rows: List[Dict[str, Any]] = []
        self._columns = ColumnTracker()
        self._seen: Set[str] = set()
        self._subscription = None
        self.detached = False

    @property
    def columns(self) -> List[str]:
        return list(self._columns.columns)

    def _accept(self, doc_id: str, row: Dict[str, Any]) -> bool:
        if doc_id in self._seen:
            return False
        self._seen.add(doc_id)
        self.rows.append(row)
        if self._columns.observe(row):
            logger.debug(f"Channel {self.handle.key} columns now {self._columns.columns}")
        return True

    async def _backlog(self) -> List[Dict[str, Any]]:
        fresh = []
        for document in await self.store.list(self.handle.rows_collection):
            if self._accept(document.id, document.data):
                fresh.append(document.data)
        return fresh

    async def snapshot(self) -> List[Dict[str, Any]]:
        """Read every row currently in the channel without following."""
        await self._backlog()
        return list(self.rows)

    async def follow(self, idle_timeout: Optional[float] = None) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield rows until detached, cancelled, or idle for idle_timeout seconds.

        Logic:
        1. Subscribe before reading so no append is missed
        2. Deliver the backlog
        3. Deliver new rows from events; re-list periodically to cover
           dropped notifications
        """
        loop = asyncio.get_running_loop()
        try:
            self._subscription = await self.store.subscribe(self.handle.rows_collection)
        except TransientStoreError as e:
            logger.warning(f"Row subscription unavailable for {self.handle.key}, polling: {e}")
            self._subscription = None

        try:
            for row in await self._backlog():
                yield row

            last_activity = loop.time()
            while not self.detached and not self.cancel.cancelled:
                if idle_timeout is not None and loop.time() - last_activity >= idle_timeout:
                    return

                if self._subscription is not None:
                    event = await self._subscription.next_event(timeout=self.resync_interval)
                else:
                    event = None
                    if await self.cancel.wait(self.resync_interval):
                        return

                if event is not None and event.type != EVENT_DELETE and event.document is not None:
                    if self._accept(event.doc_id, event.document.data):
                        last_activity = loop.time()
                        yield event.document.data
                    continue

                for row in await self._backlog():
                    last_activity = loop.time()
                    yield row
        finally:
            await self.detach()

    async def detach(self) -> None:
        """Release the subscription. Never deletes data."""
        self.detached = True
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await subscription.close()


@dataclass
class Observation:
    """Everything a watch session learned about one command."""

    record: CommandRecord
    updates: List[CommandUpdate] = field(default_factory=list)
    channel: Optional[ChannelHandle] = None
    rows: List[Dict[str, Any]] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)

    @property
    def message(self) -> Optional[str]:
        return self.record.result_message

    @property
    def is_terminal(self) -> bool:
        return self.record.status.is_terminal


class StatusObserver:
    def __init__(
        self,
        store: Store,
        channels: ResultChannelModule,
        mode: str = WATCH_PUSH,
        poll_interval: float = 2.0,
        max_duration: Optional[float] = 300.0,
    ):
        """
        Initialize status observer.

        Args:
            store: Shared store
            channels: Result channel module used for discovery
            mode: "push" (subscription) or "pull" (interval re-read)
            poll_interval: Seconds between re-reads
            max_duration: Cap on a watch in seconds (None = until cancelled)
        """
        if mode not in (WATCH_PUSH, WATCH_PULL):
            raise ValueError(f"Unknown watch mode: {mode}")
        self.store = store
        self.channels = channels
        self.mode = mode
        self.poll_interval = poll_interval
        self.max_duration = max_duration

    async def _read(self, command_id: str) -> CommandRecord:
        document = await self.store.get(COMMANDS_COLLECTION, command_id)
        if document is None:
            raise CommandNotFound(command_id)
        return CommandRecord.from_document(document)

    async def watch(
        self,
        command_id: str,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[CommandUpdate]:
        """
        Stream command snapshots until the first terminal one.

        Snapshots are non-decreasing in status order; a snapshot whose status
        ranks below one already delivered is dropped. Unchanged-status
        duplicates may be delivered.

        Raises:
            CommandNotFound: Record absent or deleted mid-watch
            WatchTimeout: max_duration elapsed before a terminal status
        """
        cancel = cancel or CancellationToken()
        loop = asyncio.get_running_loop()
        deadline = None if self.max_duration is None else loop.time() + self.max_duration

        subscription = None
        if self.mode == WATCH_PUSH:
            try:
                subscription = await self.store.subscribe(COMMANDS_COLLECTION, command_id)
            except TransientStoreError as e:
                logger.warning(f"Push unavailable for command {command_id}, falling back to pull: {e}")

        last: Optional[CommandUpdate] = None
        try:
            record = await self._read(command_id)
            while True:
                update = CommandUpdate.from_record(record)
                if last is not None and update.status.rank < last.status.rank:
                    logger.warning(
                        f"Dropping regressed snapshot for {command_id}: "
                        f"{last.status.value} -> {update.status.value}"
                    )
                else:
                    last = update
                    yield update
                    if update.is_terminal:
                        return

                if cancel.cancelled:
                    logger.info(f"Watch on command {command_id} cancelled")
                    return

                wait = self.poll_interval
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise WatchTimeout(command_id, self.max_duration)
                    wait = min(wait, remaining)

                if subscription is not None:
                    event = await subscription.next_event(timeout=wait)
                    if cancel.cancelled:
                        logger.info(f"Watch on command {command_id} cancelled")
                        return
                    if event is not None and event.type == EVENT_DELETE:
                        raise CommandNotFound(command_id)
                    if event is not None and event.document is not None:
                        record = CommandRecord.from_document(event.document)
                        continue
                else:
                    if await cancel.wait(wait):
                        logger.info(f"Watch on command {command_id} cancelled")
                        return
                    logger.debug(f"Polling command {command_id}")

                record = await self._read(command_id)
        finally:
            if subscription is not None:
                await subscription.close()

    async def discover_channel(self, record: CommandRecord) -> ChannelHandle:
        """
        Locate the result channel for a row-producing success.

        Logic:
        1. Primary: attach to the record's result_locator
        2. Fallback: attach to the key derived from (command id, issuer id)
        3. Secondary fallback: provenance metadata query; exactly one match

        Raises:
            DiscoveryAmbiguous: More than one provenance match
            ChannelNotFound: Every path failed
        """
        if record.result_locator:
            try:
                handle = await self.channels.attach(record.result_locator, command_id=record.id)
                logger.debug(f"Command {record.id}: attached via locator {record.result_locator}")
                return handle
            except ChannelNotFound as e:
                logger.warning(f"Command {record.id}: locator attach failed ({e}), trying derived key")

        try:
            derived = derive_key(record.id, record.issuer_id)
            handle = await self.channels.attach(
                derived, command_id=record.id, principal_id=record.issuer_id
            )
            logger.debug(f"Command {record.id}: attached via derived key {derived}")
            return handle
        except (ChannelNotFound, InvalidRequest) as e:
            logger.warning(f"Command {record.id}: derived key attach failed ({e}), querying metadata")

        candidates = await self.channels.find_by_provenance(record.id, record.issuer_id)
        if len(candidates) > 1:
            raise DiscoveryAmbiguous(record.id, [c.key for c in candidates])
        if not candidates:
            raise ChannelNotFound(
                record.result_locator or record.id, reason="all discovery paths exhausted"
            )

        handle = await self.channels.attach(candidates[0])
        logger.info(f"Command {record.id}: attached via provenance metadata {handle.key}")
        return handle

    async def subscribe_rows(
        self, handle: ChannelHandle, cancel: Optional[CancellationToken] = None
    ) -> RowSubscription:
        return RowSubscription(self.store, handle, cancel=cancel, resync_interval=self.poll_interval)

    async def observe(
        self,
        command_id: str,
        cancel: Optional[CancellationToken] = None,
        raise_on_failure: bool = True,
    ) -> Observation:
        """
        Watch a command to completion and collect its outcome.

        Row-producing successes are discovered and their rows read; other
        outcomes perform no channel discovery.

        Raises:
            ExecutionFailed: Terminal failed status (when raise_on_failure)
            DiscoveryAmbiguous, ChannelNotFound: Discovery failures
        """
        updates: List[CommandUpdate] = []
        async for update in self.watch(command_id, cancel=cancel):
            updates.append(update)

        record = await self._read(command_id)
        observation = Observation(record=record, updates=updates)

        if not updates or not updates[-1].is_terminal:
            return observation

        if record.status == CommandStatus.FAILED:
            if raise_on_failure:
                raise ExecutionFailed(record.id, record.error_detail)
            return observation

        if record.result_kind == ResultKind.ROW_PRODUCING:
            handle = await self.discover_channel(record)
            subscription = await self.subscribe_rows(handle, cancel=cancel)
            observation.channel = handle
            observation.rows = await subscription.snapshot()
            observation.columns = subscription.columns

        return observation
