"""
Directory collectors
Exports: users, groups, sections, schools (administrative units), and the
members of one group or one school.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..checkpoint.store import CheckpointStore
from ..config import PagingConfig, SDS_EXTENSION_PREFIX
from .base import BaseCollector, sds_columns

logger = logging.getLogger("m365_edu_tools.collectors.directory")

SDS_OBJECT_TYPE = f"{SDS_EXTENSION_PREFIX}ObjectType"
SDS_ROLES = ("Student", "Teacher")


def sds_role_filter(role: str) -> str:
    """$filter expression selecting users School Data Sync tagged with a role."""
    if role not in SDS_ROLES:
        raise ValueError(f"Unknown role '{role}'. Expected one of: {', '.join(SDS_ROLES)}")
    return f"{SDS_OBJECT_TYPE} eq '{role}'"


class UsersCollector(BaseCollector):
    name = "users"
    description = "All users with their School Data Sync role and ids"
    endpoint = "users"
    fields = [
        "id", "displayName", "userPrincipalName", "mail", "givenName", "surname",
        "accountEnabled", "userType", "department", "jobTitle", "createdDateTime",
    ]
    sds = sds_columns({
        "sdsObjectType": "ObjectType",
        "sdsSyncSource": "SyncSource",
        "sdsStudentId": "SyncSource_StudentId",
        "sdsTeacherId": "SyncSource_TeacherId",
        "sdsGrade": "Grade",
    })

    def __init__(
        self,
        client,
        config: PagingConfig,
        store: Optional[CheckpointStore] = None,
        role: Optional[str] = None,
    ):
        super().__init__(client, config, store)
        self.role = role

    @property
    def checkpoint_key(self) -> str:
        return f"export:users:{self.role}" if self.role else "export:users"

    def query_params(self) -> dict[str, str]:
        params = super().query_params()
        if self.role:
            params["$filter"] = sds_role_filter(self.role)
        return params


class GroupsCollector(BaseCollector):
    name = "groups"
    description = "All groups"
    endpoint = "groups"
    fields = [
        "id", "displayName", "mail", "mailNickname", "description", "groupTypes",
        "securityEnabled", "mailEnabled", "visibility", "createdDateTime",
    ]
    sds = sds_columns({
        "sdsObjectType": "ObjectType",
        "sdsSectionId": "SyncSource_SectionId",
        "sdsSchoolId": "SyncSource_SchoolId",
    })


class SectionsCollector(GroupsCollector):
    """Class groups created by School Data Sync."""
    name = "sections"
    description = "Section groups created by School Data Sync"
    params = {"$filter": f"{SDS_OBJECT_TYPE} eq 'Section'"}

    def accept(self, item: dict) -> bool:
        return item.get(SDS_OBJECT_TYPE) == "Section"


class SchoolsCollector(BaseCollector):
    name = "schools"
    description = "Administrative units (schools)"
    endpoint = "directory/administrativeUnits"
    fields = ["id", "displayName", "description", "visibility"]
    sds = sds_columns({
        "sdsObjectType": "ObjectType",
        "sdsSchoolId": "SyncSource_SchoolId",
        "sdsSchoolNumber": "SchoolNumber",
    })


class _MembersCollector(BaseCollector):
    parent_path = ""
    fields = ["id", "@odata.type", "displayName", "userPrincipalName", "mail"]

    def __init__(
        self,
        client,
        config: PagingConfig,
        store: Optional[CheckpointStore] = None,
        object_id: str = "",
    ):
        super().__init__(client, config, store)
        if not object_id:
            raise ValueError(f"{type(self).__name__} needs the id of the parent object")
        self.object_id = object_id
        self.endpoint = f"{self.parent_path}/{object_id}/members"

    @property
    def checkpoint_key(self) -> str:
        return f"export:{self.name}:{self.object_id}"

    def to_row(self, item: dict) -> dict:
        row = super().to_row(item)
        row["@odata.type"] = (item.get("@odata.type") or "").replace("#microsoft.graph.", "")
        return row


class GroupMembersCollector(_MembersCollector):
    name = "group-members"
    description = "Members of one group"
    parent_path = "groups"


class SchoolMembersCollector(_MembersCollector):
    name = "school-members"
    description = "Members of one administrative unit"
    parent_path = "directory/administrativeUnits"
