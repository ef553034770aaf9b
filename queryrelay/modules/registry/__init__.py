"""
Registry Module - Black Box Interface

Purpose: Templates and targets consulted by the protocol
Interface: TemplateStore (get, validate_bindings), TargetRegistry (resolve, find_by_name),
           StoreTemplateRepository / StoreTargetRegistry (save, list) for administration
Hidden: Where templates and targets are kept

Can be replaced with any template catalogue or tenant directory.
"""

from .targets import STATUS_ACTIVE, STATUS_DISABLED, StoreTargetRegistry, Target, TargetRegistry
from .templates import (
    QueryTemplate,
    StoreTemplateRepository,
    TemplateStore,
    check_bindings,
    placeholders,
    render,
)

__all__ = [
    "QueryTemplate",
    "STATUS_ACTIVE",
    "STATUS_DISABLED",
    "StoreTargetRegistry",
    "StoreTemplateRepository",
    "Target",
    "TargetRegistry",
    "TemplateStore",
    "check_bindings",
    "placeholders",
    "render",
]
