from .base import BaseCollector, CollectorResult
from .directory import (
    UsersCollector,
    GroupsCollector,
    SectionsCollector,
    SchoolsCollector,
    GroupMembersCollector,
    SchoolMembersCollector,
    sds_role_filter,
)
from .barriers import SegmentsCollector, PoliciesCollector

GRAPH_COLLECTORS = {
    cls.name: cls
    for cls in (
        UsersCollector,
        GroupsCollector,
        SectionsCollector,
        SchoolsCollector,
        GroupMembersCollector,
        SchoolMembersCollector,
    )
}

COMPLIANCE_COLLECTORS = {
    cls.name: cls for cls in (SegmentsCollector, PoliciesCollector)
}

MEMBER_COLLECTORS = {GroupMembersCollector.name, SchoolMembersCollector.name}

__all__ = [
    "BaseCollector",
    "CollectorResult",
    "UsersCollector",
    "GroupsCollector",
    "SectionsCollector",
    "SchoolsCollector",
    "GroupMembersCollector",
    "SchoolMembersCollector",
    "SegmentsCollector",
    "PoliciesCollector",
    "sds_role_filter",
    "GRAPH_COLLECTORS",
    "COMPLIANCE_COLLECTORS",
    "MEMBER_COLLECTORS",
]
