import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from queryrelay.errors import CommandNotFound, InvalidRequest
from queryrelay.modules.channel import RESERVED_ID_CHARS, ChannelHandle, derive_key
from queryrelay.modules.commands import COMMANDS_COLLECTION, CommandRecord, RequestPayload
from queryrelay.modules.registry import TargetRegistry, TemplateStore
from queryrelay.modules.storage import Store

logger = logging.getLogger("queryrelay.dispatcher")


class Dispatcher:
    def __init__(
        self,
        store: Store,
        target_registry: TargetRegistry,
        template_store: Optional[TemplateStore] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            store: Shared store
            target_registry: Resolves requester contexts to targets
            template_store: Validates template bindings (None skips validation)
        """
        self.store = store
        self.targets = target_registry
        self.templates = template_store

    def _parse_payload(self, payload: Union[RequestPayload, Dict[str, Any]]) -> RequestPayload:
        if isinstance(payload, RequestPayload):
            return payload
        if not isinstance(payload, dict):
            raise InvalidRequest("Payload must be a mapping")
        try:
            return RequestPayload.model_validate(payload)
        except ValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise InvalidRequest(f"Malformed payload: {messages}") from e

    async def submit(
        self,
        requester_context: str,
        issuer_id: str,
        payload: Union[RequestPayload, Dict[str, Any]],
    ) -> str:
        """
        Create a pending command record.

        Does not wait for execution.

        Args:
            requester_context: Target the request is addressed to
            issuer_id: Requesting principal
            payload: {template_id, bindings} or {literal_text}

        Returns:
            Command ID

        Raises:
            InvalidRequest: Malformed payload, missing issuer, bad bindings
            TargetUnavailable: Requester context does not resolve

        Logic:
        1. Validate payload shape
        2. Resolve the target (must be active)
        3. Validate template bindings through the template store
        4. Create exactly one record in pending
        """
        request = self._parse_payload(payload)

        if not issuer_id or not issuer_id.strip():
            raise InvalidRequest("Issuer id is required")
        if any(c in issuer_id for c in RESERVED_ID_CHARS):
            raise InvalidRequest(f"Issuer id must not contain ':' or '/': {issuer_id}")

        target = await self.targets.resolve(requester_context)

        if request.is_template and self.templates is not None:
            await self.templates.validate_bindings(request.template_id, request.bindings)

        record = CommandRecord(
            id=str(uuid.uuid4()),
            requester_context=target.id,
            issuer_id=issuer_id,
            payload=request,
        )
        document = await self.store.create(COMMANDS_COLLECTION, record.id, record.to_document())

        kind = f"template {request.template_id}" if request.is_template else "literal text"
        logger.info(
            f"Submitted command {document.id} for {target.id} by {issuer_id} ({kind})"
        )
        return document.id

    async def get(self, command_id: str) -> CommandRecord:
        """
        Get the current command record.

        Raises:
            CommandNotFound: If no record exists
        """
        document = await self.store.get(COMMANDS_COLLECTION, command_id)
        if document is None:
            raise CommandNotFound(command_id)
        return CommandRecord.from_document(document)

    def derived_channel_key(self, command_id: str, principal_id: str) -> str:
        """Address where a principal's rows for this command will appear."""
        return derive_key(command_id, principal_id)

    def expected_channel(self, record: CommandRecord) -> ChannelHandle:
        """Handle for the channel derived from the record's issuer."""
        return ChannelHandle.for_command(record.id, record.issuer_id)

    async def list_for_issuer(self, issuer_id: str) -> List[CommandRecord]:
        documents = await self.store.list(COMMANDS_COLLECTION, where={"issuer_id": issuer_id})
        return [CommandRecord.from_document(d) for d in documents]

    async def delete(self, command_id: str) -> bool:
        """Delete a command record. Returns False if it did not exist."""
        deleted = await self.store.delete(COMMANDS_COLLECTION, command_id)
        if deleted:
            logger.info(f"Deleted command {command_id}")
        return deleted

    async def delete_all_for_issuer(self, issuer_id: str) -> Tuple[List[str], List[Tuple[str, str]]]:
        """
        Delete every command record issued by a principal.

        Each record is deleted independently; failures are collected.

        Returns:
            Tuple of (deleted command ids, [(command id, error)])
        """
        deleted: List[str] = []
        failures: List[Tuple[str, str]] = []

        for record in await self.list_for_issuer(issuer_id):
            try:
                if await self.delete(record.id):
                    deleted.append(record.id)
            except Exception as e:
                logger.error(f"Failed to delete command {record.id}: {e}")
                failures.append((record.id, str(e)))

        return deleted, failures
