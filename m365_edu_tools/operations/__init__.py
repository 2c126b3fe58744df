from .base import BaseOperation, OperationContext, merge_reports
from .memberships import AddMembersOperation, AddRoleToGroupOperation, RemoveMembersOperation
from .deletion import DeleteObjectsOperation
from .barriers import (
    ApplyBarriersOperation,
    BarrierTarget,
    CreateBarriersOperation,
    RemoveBarriersOperation,
    barrier_name,
)

__all__ = [
    "BaseOperation",
    "OperationContext",
    "merge_reports",
    "AddMembersOperation",
    "AddRoleToGroupOperation",
    "RemoveMembersOperation",
    "DeleteObjectsOperation",
    "ApplyBarriersOperation",
    "BarrierTarget",
    "CreateBarriersOperation",
    "RemoveBarriersOperation",
    "barrier_name",
]
