"""
Information barrier collectors
Exports organization segments and barrier policies from the compliance API.
The cmdlets return every page in one call, so these exports do not checkpoint.
"""

from __future__ import annotations

from typing import AsyncGenerator, Optional

from ..graph.client import GraphPage
from .base import BaseCollector


class _CmdletCollector(BaseCollector):
    cmdlet = ""

    async def pages(
        self,
        start_url: Optional[str] = None,
        skip_token: Optional[str] = None,
    ) -> AsyncGenerator[GraphPage, None]:
        result = await self.client.invoke(self.cmdlet)
        yield GraphPage(items=result.values, next_link=None)


class SegmentsCollector(_CmdletCollector):
    name = "segments"
    description = "Organization segments"
    cmdlet = "Get-OrganizationSegment"
    fields = ["Name", "UserGroupFilter", "ExoSegmentId", "Guid", "WhenChanged"]


class PoliciesCollector(_CmdletCollector):
    name = "policies"
    description = "Information barrier policies"
    cmdlet = "Get-InformationBarrierPolicy"
    fields = [
        "Name", "AssignedSegment", "SegmentsAllowed", "SegmentsBlocked",
        "State", "Guid", "WhenChanged",
    ]
