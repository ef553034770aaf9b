"""
Command status state machine.

    pending -> running -> success
                       -> failed
    pending -> success | failed   (fast executions may skip running)

Terminal states accept no further transitions.
"""

from datetime import UTC, datetime
from typing import Any, Dict, Optional

from queryrelay.errors import IllegalTransition

from .models import CommandRecord, CommandStatus, ResultKind

ALLOWED_TRANSITIONS = {
    CommandStatus.PENDING: {CommandStatus.RUNNING, CommandStatus.SUCCESS, CommandStatus.FAILED},
    CommandStatus.RUNNING: {CommandStatus.SUCCESS, CommandStatus.FAILED},
    CommandStatus.SUCCESS: set(),
    CommandStatus.FAILED: set(),
}


def can_transition(current: CommandStatus, requested: CommandStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


def plan_transition(
    record: CommandRecord,
    status: CommandStatus,
    *,
    result_kind: Optional[ResultKind] = None,
    result_message: Optional[str] = None,
    error_detail: Optional[str] = None,
    result_locator: Optional[str] = None,
    claimed_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Compute the field changes for moving a record to a new status.

    Args:
        record: Current record snapshot
        status: Requested status
        result_kind: Outcome kind (success only)
        result_message: Human-readable outcome (non-row-producing success)
        error_detail: Failure description (failed only)
        result_locator: Channel address (row-producing success only)
        claimed_by: Executing principal (running, or direct terminal from pending)
        now: Transition time (defaults to current UTC time)

    Returns:
        Dict of field changes, JSON-ready for the store

    Raises:
        IllegalTransition: If the state machine forbids the move or the
            supplied fields would break a record invariant
    """
    status = CommandStatus(status)
    if not can_transition(record.status, status):
        raise IllegalTransition(record.id, record.status.value, status.value)

    if error_detail is not None and status != CommandStatus.FAILED:
        raise IllegalTransition(record.id, record.status.value, f"{status.value} with error_detail")

    if result_locator is not None and not (
        status == CommandStatus.SUCCESS and result_kind == ResultKind.ROW_PRODUCING
    ):
        raise IllegalTransition(record.id, record.status.value, f"{status.value} with result_locator")

    if status == CommandStatus.SUCCESS and result_kind in (None, ResultKind.UNSET):
        raise IllegalTransition(record.id, record.status.value, "success without result_kind")

    if status != CommandStatus.SUCCESS and result_kind not in (None, ResultKind.UNSET):
        raise IllegalTransition(record.id, record.status.value, f"{status.value} with result_kind")

    timestamp = (now or datetime.now(UTC)).isoformat()
    changes: Dict[str, Any] = {"status": status.value, "updated_at": timestamp}

    if claimed_by is not None:
        changes["claimed_by"] = claimed_by

    if status.is_terminal:
        changes["completed_at"] = timestamp

    if status == CommandStatus.SUCCESS:
        changes["result_kind"] = result_kind.value
        changes["result_message"] = result_message
        changes["result_locator"] = result_locator
    elif status == CommandStatus.FAILED:
        changes["error_detail"] = error_detail or "execution failed"

    return changes


def apply_transition(record: CommandRecord, status: CommandStatus, **kwargs) -> CommandRecord:
    """Return a new record with the transition applied (no store access)."""
    changes = plan_transition(record, status, **kwargs)
    return CommandRecord.model_validate({**record.model_dump(mode="json"), **changes})
