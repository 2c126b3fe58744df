"""
Group membership operations
Add members from a list, add every School Data Sync student or teacher,
and remove listed (or all) members of a group.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..collectors.directory import sds_role_filter
from ..config import MEMBER_BIND_CHUNK
from ..graph.client import GraphAPIError, GraphClient
from .base import BaseOperation, OperationContext

logger = logging.getLogger("m365_edu_tools.operations.memberships")


def chunked(ids: list[str], size: int = MEMBER_BIND_CHUNK) -> list[tuple[str, ...]]:
    return [tuple(ids[i:i + size]) for i in range(0, len(ids), size)]


def _already_member(error: GraphAPIError) -> bool:
    return error.status_code == 400 and "already exist" in str(error)


class AddMembersOperation(BaseOperation):
    name = "add-members"
    description = "Add members to group"

    def __init__(self, ctx: OperationContext, group_id: str, member_ids: Optional[list[str]] = None):
        super().__init__(ctx)
        self.group_id = group_id
        self.member_ids = member_ids or []

    async def member_source(self) -> list[str]:
        return self.member_ids

    async def targets(self) -> list[tuple[str, ...]]:
        ids = list(dict.fromkeys(await self.member_source()))
        return chunked(ids)

    def key(self, item: tuple[str, ...]) -> str:
        if len(item) == 1:
            return item[0]
        return f"{item[0]} (+{len(item) - 1})"

    def confirm_message(self, count: int) -> str:
        return f"Add members to group {self.group_id} in {count} requests?"

    async def apply(self, session: GraphClient, item: tuple[str, ...]):
        try:
            await session.add_members(self.group_id, item)
        except GraphAPIError as e:
            if not _already_member(e):
                raise
            if len(item) == 1:
                logger.info(f"{item[0]} is already a member of {self.group_id}")
                return
            # One existing member rejects the whole bind, so add one at a time
            logger.info(f"Chunk {self.key(item)} has existing members; adding individually")
            for member_id in item:
                try:
                    await session.add_members(self.group_id, [member_id])
                except GraphAPIError as inner:
                    if not _already_member(inner):
                        raise


class AddRoleToGroupOperation(AddMembersOperation):
    """Adds every user School Data Sync tagged as Student or Teacher."""
    name = "add-role"

    def __init__(self, ctx: OperationContext, group_id: str, role: str):
        super().__init__(ctx, group_id)
        sds_role_filter(role)  # validates the role
        self.role = role
        self.description = f"Add all {role.lower()}s to group"

    async def member_source(self) -> list[str]:
        async with self.ctx.graph_factory() as graph:
            users = await graph.get_all_pages(
                "users",
                params={"$filter": sds_role_filter(self.role), "$select": "id"},
            )
        ids = [u["id"] for u in users if u.get("id")]
        print(f"  🔎 Found {len(ids)} users with role {self.role}")
        return ids


class RemoveMembersOperation(BaseOperation):
    name = "remove-members"
    description = "Remove members from group"

    def __init__(self, ctx: OperationContext, group_id: str, member_ids: Optional[list[str]] = None):
        super().__init__(ctx)
        self.group_id = group_id
        self.member_ids = member_ids

    async def targets(self) -> list[str]:
        if self.member_ids is not None:
            return list(dict.fromkeys(self.member_ids))
        async with self.ctx.graph_factory() as graph:
            members = await graph.get_all_pages(
                f"groups/{self.group_id}/members", params={"$select": "id"}
            )
        return [m["id"] for m in members if m.get("id")]

    def confirm_message(self, count: int) -> str:
        return f"Remove {count} members from group {self.group_id}?"

    async def apply(self, session: GraphClient, member_id: str):
        try:
            await session.remove_member(self.group_id, member_id)
        except GraphAPIError as e:
            if e.status_code != 404:
                raise
            logger.info(f"{member_id} is not a member of {self.group_id}")
