"""
Command record data models.

A command record is the request/response envelope for one execution. The
requester creates it in ``pending``; only the executor moves it forward.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from queryrelay.modules.storage import Document

COMMANDS_COLLECTION = "commands"


# Enums


class CommandStatus(str, Enum):
    """Status of command execution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CommandStatus.SUCCESS, CommandStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position in the state machine; terminal states share the top rank."""
        return {"pending": 0, "running": 1, "success": 2, "failed": 2}[self.value]


class ResultKind(str, Enum):
    """What a successful execution produced."""

    ROW_PRODUCING = "row-producing"
    NON_ROW_PRODUCING = "non-row-producing"
    UNSET = "unset"


# Request payload


class RequestPayload(BaseModel):
    """Either a named template with bindings, or literal executable text."""

    template_id: Optional[str] = Field(None, description="Query template identifier")
    bindings: Dict[str, str] = Field(default_factory=dict, description="Template variable bindings")
    literal_text: Optional[str] = Field(None, description="Literal query text")

    @field_validator("template_id", "literal_text")
    @classmethod
    def blank_to_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def exactly_one_shape(self):
        if self.template_id and self.literal_text:
            raise ValueError("Payload must reference a template or carry literal text, not both")
        if not self.template_id and not self.literal_text:
            raise ValueError("Payload must reference a template or carry non-empty literal text")
        if self.literal_text and self.bindings:
            raise ValueError("Bindings are only valid with a template")
        return self

    @property
    def is_template(self) -> bool:
        return self.template_id is not None


# Command record


class CommandRecord(BaseModel):
    """Request/response envelope coordinating one execution."""

    id: str
    requester_context: str
    issuer_id: str
    payload: RequestPayload
    status: CommandStatus = CommandStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result_kind: ResultKind = ResultKind.UNSET
    result_message: Optional[str] = None
    error_detail: Optional[str] = None
    result_locator: Optional[str] = None
    claimed_by: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the store. Identity and creation time belong to the store."""
        return self.model_dump(mode="json", exclude={"id", "created_at"})

    @classmethod
    def from_document(cls, document: Document) -> "CommandRecord":
        return cls(id=document.id, created_at=document.created_at, **document.data)

    def invariant_violations(self) -> List[str]:
        """Return descriptions of every record invariant this snapshot breaks."""
        violations = []
        if self.status.is_terminal and self.completed_at is None:
            violations.append("terminal status without completed_at")
        if not self.status.is_terminal and self.completed_at is not None:
            violations.append("completed_at set on non-terminal status")
        if self.result_locator is not None and not (
            self.status == CommandStatus.SUCCESS and self.result_kind == ResultKind.ROW_PRODUCING
        ):
            violations.append("result_locator set outside row-producing success")
        if self.error_detail is not None and self.status != CommandStatus.FAILED:
            violations.append("error_detail set on non-failed status")
        return violations


class CommandUpdate(BaseModel):
    """Snapshot of a command record delivered to a watcher."""

    command_id: str
    status: CommandStatus
    result_kind: ResultKind = ResultKind.UNSET
    result_message: Optional[str] = None
    error_detail: Optional[str] = None
    result_locator: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_record(cls, record: CommandRecord) -> "CommandUpdate":
        return cls(
            command_id=record.id,
            status=record.status,
            result_kind=record.result_kind,
            result_message=record.result_message,
            error_detail=record.error_detail,
            result_locator=record.result_locator,
            completed_at=record.completed_at,
        )
