"""
Executor binding.

The agent-side half of the protocol: find pending commands addressed to this
agent's target, claim one with a conditional update, run it, and publish the
outcome through the command record and (for rows) a result channel.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from queryrelay.errors import ClaimConflict, InvalidRequest, TransientStoreError
from queryrelay.modules.channel import RESERVED_ID_CHARS, ChannelHandle, ResultChannelModule
from queryrelay.modules.commands import (
    COMMANDS_COLLECTION,
    CommandRecord,
    CommandStatus,
    ResultKind,
    plan_transition,
)
from queryrelay.modules.registry import TemplateStore, check_bindings, render
from queryrelay.modules.storage import Store

from .runner import QueryResult, QueryRunner

logger = logging.getLogger("queryrelay.executor")


class ExecutorBinding:
    def __init__(
        self,
        store: Store,
        channels: ResultChannelModule,
        principal_id: str,
        target_id: str,
        template_store: Optional[TemplateStore] = None,
        max_attempts: int = 3,
        backoff_initial: float = 0.1,
        backoff_max: float = 2.0,
    ):
        """
        Initialize executor binding.

        Args:
            store: Shared store
            channels: Result channel module
            principal_id: Identity of this agent
            target_id: Requester context this agent serves
            template_store: Resolves template payloads (required for template commands)
            max_attempts: Store attempts per step before giving up
            backoff_initial: First retry delay in seconds
            backoff_max: Upper bound on retry delay in seconds
        """
        if not principal_id or not target_id:
            raise ValueError("Executor binding requires principal_id and target_id")
        if any(c in principal_id for c in RESERVED_ID_CHARS):
            raise ValueError(f"Executor principal id must not contain ':' or '/': {principal_id}")
        self.store = store
        self.channels = channels
        self.principal_id = principal_id
        self.target_id = target_id
        self.templates = template_store
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(initial=self.backoff_initial, max=self.backoff_max),
            retry=retry_if_exception_type(TransientStoreError),
            reraise=True,
        )

    async def _conditional_update(
        self, record: CommandRecord, changes: Dict[str, Any], expected: Dict[str, Any]
    ) -> CommandRecord:
        async for attempt in self._retrying():
            with attempt:
                document = await self.store.update(
                    COMMANDS_COLLECTION, record.id, changes, expected=expected
                )
        return CommandRecord.from_document(document)

    async def pending_commands(self) -> List[CommandRecord]:
        """Pending records addressed to this agent's target, oldest first."""
        async for attempt in self._retrying():
            with attempt:
                documents = await self.store.list(
                    COMMANDS_COLLECTION,
                    where={"requester_context": self.target_id, "status": CommandStatus.PENDING.value},
                )
        return [CommandRecord.from_document(d) for d in documents]

    async def claim(self, record: CommandRecord) -> Optional[CommandRecord]:
        """
        Move a pending record to running, conditionally.

        Returns:
            The claimed record, or None if another writer got there first
            or the record no longer exists

        Raises:
            TransientStoreError: Store still failing after bounded retries
        """
        changes = plan_transition(record, CommandStatus.RUNNING, claimed_by=self.principal_id)
        try:
            claimed = await self._conditional_update(
                record, changes, expected={"status": CommandStatus.PENDING.value}
            )
        except ClaimConflict:
            logger.info(f"Command {record.id} already claimed, skipping")
            return None
        except KeyError:
            logger.info(f"Command {record.id} deleted before claim, skipping")
            return None

        logger.info(f"Claimed command {record.id} as {self.principal_id}")
        return claimed

    async def resolve_request(self, record: CommandRecord) -> Tuple[str, List[str]]:
        """
        Turn the record payload into executable text and bound parameters.

        Literal text runs as written with no parameters; template bindings
        are always passed as parameters.

        Raises:
            InvalidRequest: Unknown template, missing bindings, no template store
        """
        payload = record.payload
        if not payload.is_template:
            return payload.literal_text, []

        if self.templates is None:
            raise InvalidRequest(f"No template store to resolve template {payload.template_id}")
        template = await self.templates.get(payload.template_id)
        if template is None:
            raise InvalidRequest(f"Unknown template: {payload.template_id}")
        check_bindings(template, payload.bindings)
        return render(template, payload.bindings)

    def _owned(self) -> Dict[str, Any]:
        return {"status": CommandStatus.RUNNING.value, "claimed_by": self.principal_id}

    async def complete_with_rows(
        self, record: CommandRecord, rows: List[Dict[str, Any]]
    ) -> CommandRecord:
        """
        Publish rows through a result channel, then mark the record successful.

        The channel is torn down if anything fails before the record is
        updated, so a failed command never leaves rows behind.
        """
        handle: Optional[ChannelHandle] = None
        try:
            handle = await self.channels.create_for_command(record.id, self.principal_id)
            count = await self.channels.append_rows(handle, rows)
            await self.channels.finalize(handle, row_count=count)

            changes = plan_transition(
                record,
                CommandStatus.SUCCESS,
                result_kind=ResultKind.ROW_PRODUCING,
                result_locator=handle.locator,
            )
            completed = await self._conditional_update(record, changes, expected=self._owned())
        except Exception:
            if handle is not None:
                await self._discard_channel(handle)
            raise

        logger.info(f"Command {record.id} succeeded with {count} rows at {handle.locator}")
        return completed

    async def complete_with_message(self, record: CommandRecord, message: str) -> CommandRecord:
        changes = plan_transition(
            record,
            CommandStatus.SUCCESS,
            result_kind=ResultKind.NON_ROW_PRODUCING,
            result_message=message,
        )
        completed = await self._conditional_update(record, changes, expected=self._owned())
        logger.info(f"Command {record.id} succeeded: {message}")
        return completed

    async def fail(self, record: CommandRecord, error_detail: str) -> CommandRecord:
        """
        Tear down any channel this agent opened for the record, then mark it failed.

        The record is marked failed even when the teardown cannot be completed;
        the cleanup error is appended to its error detail.
        """
        cleanup_error = await self._discard_channel(
            ChannelHandle.for_command(record.id, self.principal_id)
        )
        if cleanup_error:
            error_detail = f"{error_detail} (result channel cleanup failed: {cleanup_error})"

        changes = plan_transition(record, CommandStatus.FAILED, error_detail=error_detail)
        failed = await self._conditional_update(record, changes, expected=self._owned())
        logger.warning(f"Command {record.id} failed: {error_detail}")
        return failed

    async def _discard_channel(self, handle: ChannelHandle) -> Optional[str]:
        """
        Tear down a channel with bounded retries.

        Returns:
            None on success, otherwise a description of the teardown failure
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    if await self.channels.teardown(handle):
                        logger.info(f"Discarded partial result channel {handle.key}")
        except Exception as e:
            logger.error(f"Could not discard result channel {handle.key}: {e}")
            return str(e) or type(e).__name__
        return None

    async def execute(self, record: CommandRecord, runner: QueryRunner) -> CommandRecord:
        """
        Run a claimed record and publish the outcome.

        Args:
            record: Record in running state claimed by this agent
            runner: Executes resolved text against the private data source

        Returns:
            The terminal record

        Logic:
        1. Resolve template or literal text
        2. Run it
        3. Rows -> channel + row-producing success; otherwise message success
        4. Any failure -> teardown partial channel, then failed (even if teardown fails)
        """
        try:
            query_text, params = await self.resolve_request(record)
            result: QueryResult = await runner.run(query_text, params)
            if result.row_producing:
                return await self.complete_with_rows(record, result.rows)
            return await self.complete_with_message(record, result.message)
        except ClaimConflict as e:
            # Another writer owns this record now; reporting would overwrite it
            logger.error(f"Lost ownership of command {record.id}: {e}")
            raise
        except Exception as e:
            logger.error(f"Execution of command {record.id} failed: {e}")
            return await self.fail(record, str(e) or type(e).__name__)

    async def process(self, record: CommandRecord, runner: QueryRunner) -> Optional[CommandRecord]:
        """Claim and execute one record. Returns None if the claim was lost."""
        claimed = await self.claim(record)
        if claimed is None:
            return None
        return await self.execute(claimed, runner)
