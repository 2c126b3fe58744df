"""
Bulk deletion of directory objects (users, groups, administrative units).
"""

from __future__ import annotations

import logging

from ..graph.client import DIRECTORY_OBJECT_PATHS, GraphAPIError, GraphClient
from .base import BaseOperation, OperationContext

logger = logging.getLogger("m365_edu_tools.operations.deletion")


class DeleteObjectsOperation(BaseOperation):
    name = "delete"

    def __init__(self, ctx: OperationContext, object_type: str, object_ids: list[str]):
        super().__init__(ctx)
        if object_type not in DIRECTORY_OBJECT_PATHS:
            raise ValueError(
                f"Unknown object type '{object_type}'. "
                f"Expected one of: {', '.join(DIRECTORY_OBJECT_PATHS)}"
            )
        self.object_type = object_type
        self.object_ids = object_ids
        self.name = f"delete-{object_type}"
        self.description = f"Delete {object_type}"

    async def targets(self) -> list[str]:
        return list(dict.fromkeys(self.object_ids))

    def confirm_message(self, count: int) -> str:
        return f"Delete {count} {self.object_type}?"

    async def apply(self, session: GraphClient, object_id: str):
        try:
            await session.delete_object(self.object_type, object_id)
        except GraphAPIError as e:
            if e.status_code != 404:
                raise
            logger.info(f"{self.object_type} {object_id} no longer exists")
