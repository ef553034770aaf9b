"""
QueryRelay error taxonomy.

Every failure the protocol can surface is one of these. Local validation
errors are raised synchronously to the caller; execution failures travel
through the command record's terminal state and are re-raised on the
requester side as ExecutionFailed.
"""

from dataclasses import dataclass
from typing import List, Optional


class QueryRelayError(Exception):
    """Base class for all QueryRelay errors."""


class InvalidRequest(QueryRelayError):
    """Malformed request payload. Never retried."""


class TargetUnavailable(QueryRelayError):
    """Requester context does not resolve to an active target."""


class ExecutionFailed(QueryRelayError):
    """The executor reported a terminal failed status."""

    def __init__(self, command_id: str, error_detail: Optional[str]):
        self.command_id = command_id
        self.error_detail = error_detail
        super().__init__(f"Command {command_id} failed: {error_detail or 'unknown error'}")


class DiscoveryAmbiguous(QueryRelayError):
    """More than one result channel matched during fallback discovery."""

    def __init__(self, command_id: str, candidates: List[str]):
        self.command_id = command_id
        self.candidates = candidates
        super().__init__(
            f"Ambiguous result channel for command {command_id}: "
            f"{len(candidates)} candidates ({', '.join(candidates)})"
        )


class ChannelNotFound(QueryRelayError):
    """Attach attempted on a torn-down or nonexistent result channel."""

    def __init__(self, channel_key: str, reason: str = "not found"):
        self.channel_key = channel_key
        self.reason = reason
        super().__init__(f"Result channel {channel_key}: {reason}")


class ChannelPermissionDenied(ChannelNotFound):
    """Channel exists but belongs to another command or principal."""

    def __init__(self, channel_key: str):
        super().__init__(channel_key, reason="permission denied")


class ChannelClosed(QueryRelayError):
    """Write attempted on a channel key that has already been torn down."""

    def __init__(self, channel_key: str):
        self.channel_key = channel_key
        super().__init__(f"Result channel {channel_key} has been torn down")


class IllegalTransition(QueryRelayError):
    """Command status change that the state machine does not allow."""

    def __init__(self, command_id: str, current: str, requested: str):
        self.command_id = command_id
        self.current = current
        self.requested = requested
        super().__init__(f"Command {command_id}: illegal transition {current} -> {requested}")


class ClaimConflict(QueryRelayError):
    """Conditional update lost against a concurrent writer."""


class CommandNotFound(QueryRelayError):
    """No command record exists under the given id."""

    def __init__(self, command_id: str):
        self.command_id = command_id
        super().__init__(f"Command {command_id} not found")


class StoreError(QueryRelayError):
    """Shared store operation failed."""


class TransientStoreError(StoreError):
    """Shared store failure that may succeed on retry."""


class DocumentExists(StoreError):
    """Create-if-absent found an existing document."""


class WatchTimeout(QueryRelayError):
    """A pull-mode watch reached its maximum duration."""

    def __init__(self, command_id: str, timeout: float):
        self.command_id = command_id
        self.timeout = timeout
        super().__init__(f"Watch on command {command_id} timed out after {timeout}s")


@dataclass
class ChannelFailure:
    """Per-channel detail of a failed teardown."""

    channel_key: str
    error: str


class PartialTeardownFailure(QueryRelayError):
    """Bulk teardown where some channels could not be deleted."""

    def __init__(
        self,
        principal_id: str,
        succeeded: Optional[List[str]] = None,
        failures: Optional[List[ChannelFailure]] = None,
    ):
        self.principal_id = principal_id
        self.succeeded = succeeded or []
        self.failures = failures or []
        super().__init__(
            f"Teardown for principal {self.principal_id}: "
            f"{len(self.failures)} of {len(self.succeeded) + len(self.failures)} channels failed"
        )
