"""
Information barrier operations

Creates one organization segment per school (administrative unit) and/or per
section group, with one active policy per segment that only allows
communication inside the segment. Removal deactivates the policies, starts a
policy application, removes the policies, then removes the segments.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..batch.runner import FAILED, SKIPPED, SUCCEEDED, TIMED_OUT, BatchReport
from ..collectors.directory import SDS_OBJECT_TYPE
from ..compliance.client import ComplianceClient
from .base import BaseOperation, OperationContext, merge_reports

logger = logging.getLogger("m365_edu_tools.operations.barriers")

MAX_NAME_LENGTH = 64
POLICY_PREFIX = "IB_"
SCOPES = ("schools", "sections", "all")
APPLY_CMDLET = "Start-InformationBarrierPoliciesApplication"

# Names built by barrier_name() end with _<object guid>
GENERATED_NAME = re.compile(r"_[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def barrier_name(display_name: str, object_id: str, prefix: str = "") -> str:
    """
    prefix + display name + "_" + object id, with the display part truncated
    so the whole name fits in MAX_NAME_LENGTH characters.
    """
    suffix = f"_{object_id}"
    room = MAX_NAME_LENGTH - len(prefix) - len(suffix)
    if room < 0:
        raise ValueError(f"Object id too long for a barrier name: {object_id}")
    return f"{prefix}{display_name.strip()[:room]}{suffix}"


def referenced_segments(policy: dict) -> set[str]:
    """Every segment a policy names: assigned, allowed or blocked."""
    names = {policy.get("AssignedSegment")}
    for field_name in ("SegmentsAllowed", "SegmentsBlocked"):
        value = policy.get(field_name) or []
        names.update([value] if isinstance(value, str) else value)
    names.discard(None)
    names.discard("")
    return names


@dataclass(frozen=True)
class BarrierTarget:
    kind: str  # "school" or "section"
    object_id: str
    display_name: str

    @property
    def segment_name(self) -> str:
        return barrier_name(self.display_name, self.object_id)

    @property
    def policy_name(self) -> str:
        return barrier_name(self.display_name, self.object_id, POLICY_PREFIX)

    @property
    def user_group_filter(self) -> str:
        if self.kind == "school":
            return f"AdministrativeUnits -eq '{self.object_id}'"
        return f"MemberOf -eq '{self.object_id}'"


class CreateBarriersOperation(BaseOperation):
    name = "barriers-create"
    description = "Create information barrier segments and policies"
    session = "compliance"

    def __init__(
        self,
        ctx: OperationContext,
        scope: str = "all",
        rows: Optional[list[dict]] = None,
    ):
        super().__init__(ctx)
        if scope not in SCOPES:
            raise ValueError(f"Unknown scope '{scope}'. Expected one of: {', '.join(SCOPES)}")
        self.scope = scope
        self.rows = rows

    async def targets(self) -> list[BarrierTarget]:
        if self.rows is not None:
            kind = "school" if self.scope == "schools" else "section"
            return [
                BarrierTarget(kind, r["id"].strip(), (r.get("displayName") or r["id"]).strip())
                for r in self.rows
                if (r.get("id") or "").strip()
            ]

        targets: list[BarrierTarget] = []
        async with self.ctx.graph_factory() as graph:
            if self.scope in ("schools", "all"):
                async for au in graph.get_all_pages_stream(
                    "directory/administrativeUnits", params={"$select": "id,displayName"}
                ):
                    targets.append(BarrierTarget("school", au["id"], au.get("displayName") or au["id"]))
            if self.scope in ("sections", "all"):
                async for group in graph.get_all_pages_stream(
                    "groups",
                    params={
                        "$filter": f"{SDS_OBJECT_TYPE} eq 'Section'",
                        "$select": f"id,displayName,{SDS_OBJECT_TYPE}",
                    },
                ):
                    targets.append(BarrierTarget("section", group["id"], group.get("displayName") or group["id"]))
        return targets

    async def existing_names(self) -> tuple[set[str], set[str]]:
        segments = await self.read_with_backoff(lambda s: s.get_segments())
        policies = await self.read_with_backoff(lambda s: s.get_policies())
        return (
            {s.get("Name") for s in segments if s.get("Name")},
            {p.get("Name") for p in policies if p.get("Name")},
        )

    @staticmethod
    async def _new_segment(session: ComplianceClient, target: BarrierTarget):
        return await session.new_segment(target.segment_name, target.user_group_filter)

    @staticmethod
    async def _new_policy(session: ComplianceClient, target: BarrierTarget):
        return await session.new_policy(
            target.policy_name, target.segment_name, [target.segment_name]
        )

    async def execute(self) -> Optional[BatchReport]:
        targets = await self.targets()
        existing_segments, existing_policies = await self.existing_names()

        new_segments = [t for t in targets if t.segment_name not in existing_segments]
        new_policies = [t for t in targets if t.policy_name not in existing_policies]
        print(
            f"\n  {len(targets)} targets: {len(targets) - len(new_segments)} segments and "
            f"{len(targets) - len(new_policies)} policies already exist"
        )
        if not new_segments and not new_policies:
            print("  ✅ Nothing to create.")
            return BatchReport()

        self.preview(new_segments, "Segments to create")
        self.preview(new_policies, "Policies to create")
        if not self.confirmed(
            f"Create {len(new_segments)} segments and {len(new_policies)} policies?"
        ):
            print("  ⏭  Cancelled.")
            return None

        segment_report = await self.run_phase(
            "segments", new_segments, self._new_segment,
            key=lambda t: t.segment_name,
        )

        # A policy needs its segment; skip policies whose segment failed
        failed_segments = {
            o.key for o in segment_report.outcomes if o.status in (FAILED, TIMED_OUT)
        }
        ready = [t for t in new_policies if t.segment_name not in failed_segments]
        if len(ready) < len(new_policies):
            logger.warning(
                f"Skipping {len(new_policies) - len(ready)} policies whose segment was not created"
            )
        policy_report = await self.run_phase(
            "policies", ready, self._new_policy,
            key=lambda t: t.policy_name,
        )
        return merge_reports(segment_report, policy_report)

    def key(self, item: BarrierTarget) -> str:
        return item.segment_name


class RemoveBarriersOperation(BaseOperation):
    name = "barriers-remove"
    description = "Remove information barrier policies and segments"
    session = "compliance"

    def __init__(self, ctx: OperationContext, remove_all: bool = False):
        super().__init__(ctx)
        self.remove_all = remove_all

    def _selected(self, name: Optional[str]) -> bool:
        return bool(name) and (self.remove_all or bool(GENERATED_NAME.search(name)))

    async def targets(self) -> list:
        policies = await self.read_with_backoff(lambda s: s.get_policies())
        segments = await self.read_with_backoff(lambda s: s.get_segments())
        return [
            [p for p in policies if self._selected(p.get("Name"))],
            [s for s in segments if self._selected(s.get("Name"))],
            policies,
        ]

    def key(self, item: dict) -> str:
        return item.get("Name", "")

    @staticmethod
    async def _deactivate(session: ComplianceClient, policy: dict):
        return await session.set_policy_state(policy["Name"], "Inactive")

    @staticmethod
    async def _start_application(session: ComplianceClient, cmdlet: str):
        return await session.start_policy_application()

    @staticmethod
    async def _remove_policy(session: ComplianceClient, policy: dict):
        return await session.remove_policy(policy["Name"])

    @staticmethod
    async def _remove_segment(session: ComplianceClient, segment: dict):
        return await session.remove_segment(segment["Name"])

    async def execute(self) -> Optional[BatchReport]:
        policies, segments, all_policies = await self.targets()
        if not policies and not segments:
            print("  ✅ No matching policies or segments.")
            return BatchReport()

        self.preview(policies, "Policies to remove")
        self.preview(segments, "Segments to remove")
        if not self.confirmed(f"Remove {len(policies)} policies and {len(segments)} segments?"):
            print("  ⏭  Cancelled.")
            return None

        active = [p for p in policies if p.get("State") != "Inactive"]
        deactivate_report = await self.run_phase("deactivate", active, self._deactivate)
        apply_report = BatchReport()
        if active:
            apply_report = await self.run_phase(
                "apply", [APPLY_CMDLET], self._start_application, key=str
            )

        inactive = {o.key for o in deactivate_report.succeeded}
        removable = [
            p for p in policies
            if p.get("State") == "Inactive" or p.get("Name") in inactive
        ]
        policy_report = await self.run_phase("policies", removable, self._remove_policy)

        # A segment named by any policy that still exists cannot be removed
        removed = {o.key for o in policy_report.outcomes if o.status in (SUCCEEDED, SKIPPED)}
        kept: set[str] = set()
        for policy in all_policies:
            if policy.get("Name") not in removed:
                kept |= referenced_segments(policy)
        free = [s for s in segments if s.get("Name") not in kept]
        if len(free) < len(segments):
            logger.warning(
                f"Keeping {len(segments) - len(free)} segments still used by a policy"
            )
        segment_report = await self.run_phase("segments", free, self._remove_segment)
        return merge_reports(deactivate_report, apply_report, policy_report, segment_report)


class ApplyBarriersOperation(BaseOperation):
    name = "barriers-apply"
    description = "Start information barrier policy application"
    session = "compliance"

    async def targets(self) -> list:
        return [APPLY_CMDLET]

    async def apply(self, session: ComplianceClient, item: str):
        return await session.start_policy_application()
