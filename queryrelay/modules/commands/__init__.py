"""
Commands Module - Black Box Interface

Purpose: Command record model and status state machine
Interface: CommandRecord, CommandUpdate, plan_transition(), apply_transition()
Hidden: Field serialization, transition validation

The state machine is the single authority on which status changes are legal.
"""

from .models import (
    COMMANDS_COLLECTION,
    CommandRecord,
    CommandStatus,
    CommandUpdate,
    RequestPayload,
    ResultKind,
)
from .transitions import ALLOWED_TRANSITIONS, apply_transition, can_transition, plan_transition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "COMMANDS_COLLECTION",
    "CommandRecord",
    "CommandStatus",
    "CommandUpdate",
    "RequestPayload",
    "ResultKind",
    "apply_transition",
    "can_transition",
    "plan_transition",
]
