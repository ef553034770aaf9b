import asyncio
from typing import List

import pytest

from queryrelay.errors import (
    ChannelNotFound,
    CommandNotFound,
    DiscoveryAmbiguous,
    ExecutionFailed,
    WatchTimeout,
)
from queryrelay.modules.channel import CHANNELS_COLLECTION, ResultChannelModule
from queryrelay.modules.commands import COMMANDS_COLLECTION, CommandRecord, CommandStatus, ResultKind, plan_transition
from queryrelay.modules.observer import WATCH_PULL, WATCH_PUSH, CancellationToken, ColumnTracker, StatusObserver
from queryrelay.modules.storage import InMemoryStore

from conftest import AGENT_ID, ISSUER_ID, TARGET_ID


async def advance(store, command_id: str, status: CommandStatus, **fields) -> CommandRecord:
    """Move a stored command forward the way an executor would."""
    record = CommandRecord.from_document(await store.get(COMMANDS_COLLECTION, command_id))
    changes = plan_transition(record, status, **fields)
    return CommandRecord.from_document(await store.update(COMMANDS_COLLECTION, command_id, changes))


async def collect(observer, command_id, cancel=None) -> List:
    return [update async for update in observer.watch(command_id, cancel=cancel)]


class ScriptedReadStore(InMemoryStore):
    """Store whose command reads replay a scripted sequence of statuses."""

    def __init__(self, statuses: List[str]):
        super().__init__()
        self.statuses = list(statuses)

    async def get(self, collection, doc_id):
        document = await super().get(collection, doc_id)
        if collection == COMMANDS_COLLECTION and document is not None and self.statuses:
            status = self.statuses.pop(0)
            document.data["status"] = status
            if status in ("success", "failed"):
                document.data["completed_at"] = "2024-01-31T00:00:00+00:00"
                if status == "success":
                    document.data["result_kind"] = "non-row-producing"
                    document.data["result_message"] = "done"
        return document


class TestWatch:
    @pytest.mark.asyncio
    async def test_pull_watch_reaches_terminal(self, dispatcher, seeded, observer, store):
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "UPDATE t SET x = 1"})
        task = asyncio.create_task(collect(observer, command_id))

        await asyncio.sleep(0.03)
        await advance(store, command_id, CommandStatus.RUNNING, claimed_by=AGENT_ID)
        await asyncio.sleep(0.03)
        await advance(
            store, command_id, CommandStatus.SUCCESS,
            result_kind=ResultKind.NON_ROW_PRODUCING, result_message="3 rows affected",
        )

        updates = await asyncio.wait_for(task, timeout=2)

        ranks = [u.status.rank for u in updates]
        assert ranks == sorted(ranks)
        assert updates[0].status == CommandStatus.PENDING
        assert updates[-1].status == CommandStatus.SUCCESS
        assert updates[-1].result_message == "3 rows affected"
        assert sum(1 for u in updates if u.is_terminal) == 1

    @pytest.mark.asyncio
    async def test_push_watch_follows_store_events(self, dispatcher, seeded, store, channels):
        observer = StatusObserver(store, channels, mode=WATCH_PUSH, poll_interval=1.0, max_duration=5.0)
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "SELECT 1"})
        task = asyncio.create_task(collect(observer, command_id))

        await asyncio.sleep(0.01)
        await advance(store, command_id, CommandStatus.RUNNING, claimed_by=AGENT_ID)
        await advance(store, command_id, CommandStatus.FAILED, error_detail="no such table: t")

        updates = await asyncio.wait_for(task, timeout=2)

        assert [u.status for u in updates] == [CommandStatus.PENDING, CommandStatus.RUNNING, CommandStatus.FAILED]
        assert updates[-1].error_detail == "no such table: t"

    @pytest.mark.asyncio
    async def test_regressed_snapshot_dropped(self, channels):
        store = ScriptedReadStore(["running", "pending", "running", "success"])
        await store.create(
            COMMANDS_COLLECTION, "cmd-1",
            {"requester_context": TARGET_ID, "issuer_id": ISSUER_ID,
             "payload": {"literal_text": "SELECT 1"}, "status": "pending"},
        )
        observer = StatusObserver(store, ResultChannelModule(store), mode=WATCH_PULL, poll_interval=0.001)

        updates = await collect(observer, "cmd-1")

        assert [u.status.value for u in updates] == ["running", "running", "success"]

    @pytest.mark.asyncio
    async def test_cancellation_stops_watch_without_deleting(self, dispatcher, seeded, observer, store):
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "SELECT 1"})
        cancel = CancellationToken()
        task = asyncio.create_task(collect(observer, command_id, cancel=cancel))

        await asyncio.sleep(0.03)
        cancel.cancel()
        updates = await asyncio.wait_for(task, timeout=2)

        assert updates and all(u.status == CommandStatus.PENDING for u in updates)
        assert await store.get(COMMANDS_COLLECTION, command_id) is not None

    @pytest.mark.asyncio
    async def test_pull_watch_times_out(self, dispatcher, seeded, store, channels):
        observer = StatusObserver(store, channels, mode=WATCH_PULL, poll_interval=0.01, max_duration=0.05)
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "SELECT 1"})

        with pytest.raises(WatchTimeout):
            await collect(observer, command_id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [WATCH_PUSH, WATCH_PULL])
    async def test_deleted_record_ends_watch(self, dispatcher, seeded, store, channels, mode):
        observer = StatusObserver(store, channels, mode=mode, poll_interval=0.01, max_duration=5.0)
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "SELECT 1"})
        task = asyncio.create_task(collect(observer, command_id))

        await asyncio.sleep(0.03)
        await dispatcher.delete(command_id)

        with pytest.raises(CommandNotFound):
            await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_unknown_command(self, observer):
        with pytest.raises(CommandNotFound):
            await collect(observer, "missing")

    def test_unknown_mode_rejected(self, store, channels):
        with pytest.raises(ValueError):
            StatusObserver(store, channels, mode="carrier-pigeon")


class TestDiscovery:
    async def _finished(self, dispatcher, store, locator=None):
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "SELECT 1"})
        return await advance(
            store, command_id, CommandStatus.SUCCESS,
            result_kind=ResultKind.ROW_PRODUCING, result_locator=locator,
        )

    @pytest.mark.asyncio
    async def test_primary_locator(self, dispatcher, seeded, store, channels, observer):
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "SELECT 1"})
        handle = await channels.create_for_command(command_id, AGENT_ID)
        record = await advance(
            store, command_id, CommandStatus.SUCCESS,
            result_kind=ResultKind.ROW_PRODUCING, result_locator=handle.locator,
        )

        found = await observer.discover_channel(record)

        assert found.key == f"{command_id}:{AGENT_ID}"

    @pytest.mark.asyncio
    async def test_broken_locator_falls_back_to_derived_key(self, dispatcher, seeded, store, channels, observer):
        other = await channels.create_for_command("someone-elses-command", AGENT_ID)
        record = await self._finished(dispatcher, store, locator=other.locator)
        await channels.create_for_command(record.id, ISSUER_ID)

        found = await observer.discover_channel(record)

        assert found.key == f"{record.id}:{ISSUER_ID}"

    @pytest.mark.asyncio
    async def test_missing_locator_uses_provenance(self, dispatcher, seeded, store, observer):
        record = await self._finished(dispatcher, store)
        await store.create(
            CHANNELS_COLLECTION, "legacy-channel",
            {"originating_command_id": record.id, "originating_principal_id": ISSUER_ID},
        )

        found = await observer.discover_channel(record)

        assert found.key == "legacy-channel"

    @pytest.mark.asyncio
    async def test_multiple_provenance_matches_are_ambiguous(self, dispatcher, seeded, store, observer):
        record = await self._finished(dispatcher, store)
        for key in ("legacy-a", "legacy-b"):
            await store.create(
                CHANNELS_COLLECTION, key,
                {"originating_command_id": record.id, "originating_principal_id": ISSUER_ID},
            )

        with pytest.raises(DiscoveryAmbiguous) as exc_info:
            await observer.discover_channel(record)
        assert sorted(exc_info.value.candidates) == ["legacy-a", "legacy-b"]

    @pytest.mark.asyncio
    async def test_every_path_exhausted(self, dispatcher, seeded, store, observer):
        record = await self._finished(dispatcher, store, locator="temp_query_results/gone:agent")

        with pytest.raises(ChannelNotFound):
            await observer.discover_channel(record)

    @pytest.mark.asyncio
    async def test_torn_down_channel_not_rediscovered(self, dispatcher, seeded, store, channels, observer):
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "SELECT 1"})
        handle = await channels.create_for_command(command_id, AGENT_ID)
        record = await advance(
            store, command_id, CommandStatus.SUCCESS,
            result_kind=ResultKind.ROW_PRODUCING, result_locator=handle.locator,
        )
        await channels.teardown(handle)

        with pytest.raises(ChannelNotFound):
            await observer.discover_channel(record)


class TestRows:
    def test_column_tracker_grows_in_order(self):
        tracker = ColumnTracker()

        assert tracker.observe({"id": 1, "total": "10"})
        assert not tracker.observe({"total": "20", "id": 2})
        assert tracker.observe({"id": 3, "region": "EU"})
        assert tracker.columns == ["id", "total", "region"]

    @pytest.mark.asyncio
    async def test_follow_delivers_backlog_then_new_rows(self, channels, observer):
        handle = await channels.create_for_command("cmd-1", AGENT_ID)
        await channels.append_row(handle, {"id": 1})
        subscription = await observer.subscribe_rows(handle)
        received = []

        async def consume():
            stream = subscription.follow(idle_timeout=2.0)
            async for row in stream:
                received.append(row)
                if len(received) == 3:
                    break
            await stream.aclose()

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.02)
        await channels.append_row(handle, {"id": 2})
        await channels.append_row(handle, {"id": 3, "note": "late column"})
        await asyncio.wait_for(task, timeout=2)

        assert received == [{"id": 1}, {"id": 2}, {"id": 3, "note": "late column"}]
        assert subscription.columns == ["id", "note"]
        assert subscription.detached
        # Detaching leaves the data in place
        assert len(await channels.list_rows(handle)) == 3

    @pytest.mark.asyncio
    async def test_follow_stops_when_idle(self, channels, observer):
        handle = await channels.create_for_command("cmd-1", AGENT_ID)
        await channels.append_row(handle, {"id": 1})
        subscription = await observer.subscribe_rows(handle)

        rows = [row async for row in subscription.follow(idle_timeout=0.05)]

        assert rows == [{"id": 1}]


class TestObserve:
    @pytest.mark.asyncio
    async def test_row_producing_outcome(self, dispatcher, seeded, store, channels, observer):
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "SELECT id, total FROM sales"})
        handle = await channels.create_for_command(command_id, AGENT_ID)
        await channels.append_rows(handle, [{"id": 1, "total": "10"}, {"id": 2}])
        await advance(
            store, command_id, CommandStatus.SUCCESS,
            result_kind=ResultKind.ROW_PRODUCING, result_locator=handle.locator,
        )

        observation = await observer.observe(command_id)

        assert observation.channel.key == handle.key
        assert observation.rows == [{"id": 1, "total": "10"}, {"id": 2}]
        assert observation.columns == ["id", "total"]
        assert observation.is_terminal

    @pytest.mark.asyncio
    async def test_non_row_producing_skips_discovery(self, dispatcher, seeded, store, channels, observer, monkeypatch):
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "DELETE FROM sales"})
        await advance(
            store, command_id, CommandStatus.SUCCESS,
            result_kind=ResultKind.NON_ROW_PRODUCING, result_message="3 rows affected",
        )

        async def no_discovery(record):
            raise AssertionError("discovery must not run")

        monkeypatch.setattr(observer, "discover_channel", no_discovery)
        observation = await observer.observe(command_id)

        assert observation.message == "3 rows affected"
        assert observation.channel is None
        assert observation.rows == []

    @pytest.mark.asyncio
    async def test_failed_outcome(self, dispatcher, seeded, store, observer):
        command_id = await dispatcher.submit(TARGET_ID, ISSUER_ID, {"literal_text": "SELECT * FROM nowhere"})
        await advance(store, command_id, CommandStatus.FAILED, error_detail="no such table: nowhere")

        with pytest.raises(ExecutionFailed) as exc_info:
            await observer.observe(command_id)
        assert exc_info.value.error_detail == "no such table: nowhere"

        observation = await observer.observe(command_id, raise_on_failure=False)
        assert observation.record.status == CommandStatus.FAILED
