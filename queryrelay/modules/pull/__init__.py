"""
Pull Module - Black Box Interface

Purpose: Cross-tenant bulk read of result rows by tenant name
Interface: BulkPullService.pull(tenant_names, command_ids=None)
Hidden: Tenant -> principal resolution, channel selection

Without an explicit command id the channel is chosen by recency, which can
return another in-flight request's rows for the same principal. Pass a
command id per tenant to address the channel exactly.
"""

from .service import SELECTED_BY_COMMAND, SELECTED_BY_RECENCY, BulkPullService, PullResult, TenantPull

__all__ = ["SELECTED_BY_COMMAND", "SELECTED_BY_RECENCY", "BulkPullService", "PullResult", "TenantPull"]
