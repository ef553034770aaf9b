"""
API Module - Black Box Interface

Purpose: HTTP request/response shapes
Interface: Pydantic models used by queryrelay.main
Hidden: Field aliases, wire validation

The API module only orchestrates - it contains no business logic.
All logic is delegated to appropriate modules.
"""

from .models import (
    ChannelFailureResponse,
    CommandResponse,
    DeleteCommandResponse,
    PullRequest,
    RowsResponse,
    SubmitCommandRequest,
    SubmitCommandResponse,
    TargetRequest,
    TargetResponse,
    TeardownResponse,
    TemplateRequest,
    TemplateResponse,
)

__all__ = [
    "ChannelFailureResponse",
    "CommandResponse",
    "DeleteCommandResponse",
    "PullRequest",
    "RowsResponse",
    "SubmitCommandRequest",
    "SubmitCommandResponse",
    "TargetRequest",
    "TargetResponse",
    "TeardownResponse",
    "TemplateRequest",
    "TemplateResponse",
]
