"""
QueryRelay HTTP data models.

Request and response bodies for the API surface. Protocol types live in
their own modules; these only shape what crosses the wire.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from queryrelay.modules.channel import RESERVED_ID_CHARS
from queryrelay.modules.commands import CommandRecord, CommandStatus, RequestPayload, ResultKind
from queryrelay.modules.registry import STATUS_ACTIVE, STATUS_DISABLED, QueryTemplate, Target

# Request Models (API Input)


class SubmitCommandRequest(BaseModel):
    """Request to run a template or literal query against a target."""

    requester_context: str = Field(
        ..., description="Target (tenant data source) identifier", min_length=1, max_length=200
    )
    issuer_id: Optional[str] = Field(
        None, description="Requesting principal (defaults to the API key's service identity)"
    )
    template_id: Optional[str] = Field(None, description="Query template identifier")
    bindings: Dict[str, str] = Field(default_factory=dict, description="Template variable bindings")
    literal_text: Optional[str] = Field(None, description="Literal query text")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "bindings": self.bindings,
            "literal_text": self.literal_text,
        }


class PullRequest(BaseModel):
    """Bulk pull of the latest result rows for one or more tenants."""

    model_config = ConfigDict(populate_by_name=True)

    client_name: Optional[str] = Field(None, alias="clientName", description="Single tenant name")
    client_names: List[str] = Field(default_factory=list, description="Tenant names")
    command_ids: Dict[str, str] = Field(
        default_factory=dict, description="Tenant name -> command id for exact addressing"
    )

    @field_validator("client_names")
    @classmethod
    def strip_names(cls, v):
        return [name.strip() for name in v if name and name.strip()]

    @model_validator(mode="after")
    def require_a_name(self):
        if not self.client_name and not self.client_names:
            raise ValueError("clientName or client_names is required")
        return self

    @property
    def names(self) -> List[str]:
        names = list(self.client_names)
        if self.client_name and self.client_name.strip() not in names:
            names.insert(0, self.client_name.strip())
        return names


class TemplateRequest(BaseModel):
    """Register or replace a query template."""

    id: str = Field(..., description="Template identifier", min_length=1, max_length=200)
    name: str = Field(..., description="Display name", min_length=1)
    sql_text: str = Field(..., description="SQL with {{variable}} placeholders", min_length=1)
    declared_variables: List[str] = Field(
        default_factory=list, description="Variables that must be bound (placeholders are added automatically)"
    )

    def to_template(self) -> QueryTemplate:
        return QueryTemplate(
            id=self.id, name=self.name, sql_text=self.sql_text,
            declared_variables=list(self.declared_variables),
        )


class TargetRequest(BaseModel):
    """Register or replace a target and the agent assigned to it."""

    id: str = Field(..., description="Target identifier (the requester context)", min_length=1, max_length=200)
    name: str = Field(..., description="Tenant name used by the bulk pull endpoint", min_length=1)
    agent_principal_id: str = Field(..., description="Principal id of the assigned agent", min_length=1)
    status: str = Field(STATUS_ACTIVE, description="active or disabled")
    connection: Dict[str, Any] = Field(default_factory=dict, description="Opaque agent-side connection hints")

    @field_validator("agent_principal_id")
    @classmethod
    def principal_is_addressable(cls, v):
        if any(c in v for c in RESERVED_ID_CHARS):
            raise ValueError("agent_principal_id must not contain ':' or '/'")
        return v

    @field_validator("status")
    @classmethod
    def known_status(cls, v):
        if v not in (STATUS_ACTIVE, STATUS_DISABLED):
            raise ValueError(f"status must be {STATUS_ACTIVE} or {STATUS_DISABLED}")
        return v

    def to_target(self) -> Target:
        return Target(
            id=self.id, name=self.name, agent_principal_id=self.agent_principal_id,
            status=self.status, connection=dict(self.connection),
        )


# Response Models (API Output)


class SubmitCommandResponse(BaseModel):
    """Response after submitting a command."""

    command_id: str
    status: CommandStatus = CommandStatus.PENDING


class CommandResponse(BaseModel):
    """Current state of a command record."""

    command_id: str
    requester_context: str
    issuer_id: str
    payload: RequestPayload
    status: CommandStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result_kind: ResultKind = ResultKind.UNSET
    result_message: Optional[str] = None
    error_detail: Optional[str] = None
    result_locator: Optional[str] = None
    claimed_by: Optional[str] = None

    @classmethod
    def from_record(cls, record: CommandRecord) -> "CommandResponse":
        return cls(command_id=record.id, **record.model_dump(exclude={"id"}))


class RowsResponse(BaseModel):
    """Rows of a row-producing command."""

    command_id: str
    channel_key: Optional[str] = None
    result_kind: ResultKind
    result_message: Optional[str] = None
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0


class DeleteCommandResponse(BaseModel):
    """Outcome of deleting a command and its result channel."""

    command_id: str
    deleted: bool
    channels_torn_down: List[str] = Field(default_factory=list)


class ChannelFailureResponse(BaseModel):
    channel_key: str
    error: str


class TeardownResponse(BaseModel):
    """Outcome of a bulk channel teardown."""

    principal_id: str
    succeeded: List[str] = Field(default_factory=list)
    failures: List[ChannelFailureResponse] = Field(default_factory=list)


class TemplateResponse(BaseModel):
    id: str
    name: str
    sql_text: str
    declared_variables: List[str] = Field(default_factory=list)

    @classmethod
    def from_template(cls, template: QueryTemplate) -> "TemplateResponse":
        return cls(**asdict(template))


class TargetResponse(BaseModel):
    id: str
    name: str
    agent_principal_id: str
    status: str
    connection: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_target(cls, target: Target) -> "TargetResponse":
        return cls(**asdict(target))
