import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from queryrelay.errors import ChannelNotFound, InvalidRequest
from queryrelay.modules.channel import ChannelHandle, ResultChannelModule, derive_key
from queryrelay.modules.registry import TargetRegistry

logger = logging.getLogger("queryrelay.pull")

SELECTED_BY_RECENCY = "recency"
SELECTED_BY_COMMAND = "command_id"


@dataclass
class TenantPull:
    """Rows pulled for one tenant, or the reason there are none."""

    tenant_name: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    channel_key: Optional[str] = None
    selected_by: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        if self.error:
            return {"error": self.error}
        return {
            "data": self.rows,
            "channel_key": self.channel_key,
            "selected_by": self.selected_by,
        }


@dataclass
class PullResult:
    """Outcome of a bulk pull, keyed by tenant name."""

    tenants: Dict[str, TenantPull] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {name: pulled.to_dict() for name, pulled in self.tenants.items()}


class BulkPullService:
    def __init__(self, target_registry: TargetRegistry, channels: ResultChannelModule):
        """
        Initialize bulk pull service.

        Args:
            target_registry: Resolves tenant names to targets
            channels: Result channel module
        """
        self.targets = target_registry
        self.channels = channels

    async def _select_channel(
        self, principal_id: str, command_id: Optional[str]
    ) -> Optional[ChannelHandle]:
        if command_id:
            try:
                return await self.channels.attach(
                    derive_key(command_id, principal_id),
                    command_id=command_id,
                    principal_id=principal_id,
                )
            except ChannelNotFound:
                return None
        return await self.channels.latest_for_principal(principal_id)

    async def pull_one(self, tenant_name: str, command_id: Optional[str] = None) -> TenantPull:
        """
        Pull rows for one tenant.

        Logic:
        1. Resolve the tenant name to its target and agent principal
        2. Exact channel by (command_id, principal) when given, else the
           principal's most recently created channel
        3. Read its rows
        """
        pulled = TenantPull(tenant_name=tenant_name)

        target = await self.targets.find_by_name(tenant_name)
        if target is None:
            pulled.error = "Client not found"
            return pulled
        if not target.agent_principal_id:
            pulled.error = "Client has no assigned agent"
            return pulled

        handle = await self._select_channel(target.agent_principal_id, command_id)
        if handle is None:
            pulled.error = "No data found for client"
            return pulled

        pulled.channel_key = handle.key
        pulled.selected_by = SELECTED_BY_COMMAND if command_id else SELECTED_BY_RECENCY
        pulled.rows = await self.channels.list_rows(handle)
        logger.info(
            f"Pulled {len(pulled.rows)} rows for {tenant_name} from {handle.key} "
            f"(by {pulled.selected_by})"
        )
        return pulled

    async def pull(
        self,
        tenant_names: List[str],
        command_ids: Optional[Dict[str, str]] = None,
    ) -> PullResult:
        """
        Pull rows for several tenants.

        Tenants are handled independently; a missing tenant or channel is
        reported under that tenant's name and does not affect the others.

        Args:
            tenant_names: Tenant (client) names
            command_ids: Optional tenant name -> command id for exact addressing

        Raises:
            InvalidRequest: No tenant names given
        """
        names = [n.strip() for n in tenant_names if n and n.strip()]
        if not names:
            raise InvalidRequest("At least one tenant name is required")

        command_ids = command_ids or {}
        result = PullResult()
        for name in dict.fromkeys(names):
            result.tenants[name] = await self.pull_one(name, command_ids.get(name))
        return result
