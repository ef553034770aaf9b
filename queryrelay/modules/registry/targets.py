"""
Target registry.

A target is a tenant data source reachable only through its agent. The
requester context on a command record is a target id; the target names the
agent principal allowed to execute against it.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from queryrelay.errors import TargetUnavailable
from queryrelay.modules.storage import Store

logger = logging.getLogger("queryrelay.registry.targets")

TARGETS_COLLECTION = "clients"

STATUS_ACTIVE = "active"
STATUS_DISABLED = "disabled"


@dataclass
class Target:
    """A tenant data source and the agent that serves it."""

    id: str
    name: str
    agent_principal_id: str
    status: str = STATUS_ACTIVE
    connection: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("id")
        return data

    @classmethod
    def from_dict(cls, target_id: str, data: Dict[str, Any]) -> "Target":
        return cls(
            id=target_id,
            name=data.get("name", target_id),
            agent_principal_id=data.get("agent_principal_id", ""),
            status=data.get("status", STATUS_ACTIVE),
            connection=data.get("connection", {}),
        )


class TargetRegistry(Protocol):
    """Protocol for target resolution."""

    async def resolve(self, requester_context: str) -> Target:
        ...

    async def find_by_name(self, name: str) -> Optional[Target]:
        ...


class StoreTargetRegistry:
    """Target registry kept in the shared store's ``clients`` collection."""

    def __init__(self, store: Store):
        self.store = store

    async def get(self, target_id: str) -> Optional[Target]:
        document = await self.store.get(TARGETS_COLLECTION, target_id)
        if document is None:
            return None
        return Target.from_dict(document.id, document.data)

    async def save(self, target: Target) -> Target:
        await self.store.put(TARGETS_COLLECTION, target.id, target.to_dict())
        logger.info(f"Saved target {target.id} ({target.name}, {target.status})")
        return target

    async def resolve(self, requester_context: str) -> Target:
        """
        Resolve a requester context to an active target.

        Raises:
            TargetUnavailable: Unknown, disabled, or agent-less target
        """
        if not requester_context:
            raise TargetUnavailable("Requester context is required")

        target = await self.get(requester_context)
        if target is None:
            raise TargetUnavailable(f"Unknown target: {requester_context}")
        if not target.is_active:
            raise TargetUnavailable(f"Target {requester_context} is {target.status}")
        if not target.agent_principal_id:
            raise TargetUnavailable(f"Target {requester_context} has no assigned agent")
        return target

    async def list(self) -> List[Target]:
        """Every registered target, in registration order."""
        return [Target.from_dict(d.id, d.data) for d in await self.store.list(TARGETS_COLLECTION)]

    async def find_by_name(self, name: str) -> Optional[Target]:
        documents = await self.store.list(TARGETS_COLLECTION, where={"name": name})
        if not documents:
            return None
        return Target.from_dict(documents[0].id, documents[0].data)
