"""Shared fixtures and fakes."""

import json
from typing import Callable

import httpx
import pytest

from m365_edu_tools.config import BatchConfig, OutputConfig, ToolConfig
from m365_edu_tools.graph.client import GraphAPIError
from m365_edu_tools.compliance.client import CmdletResult, RateLimitWarning
from m365_edu_tools.operations import OperationContext
from m365_edu_tools.safety.guardian import WriteGuard


class Recorder:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, responses: list):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if callable(response):
            return response(request)
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def body(self, index: int) -> dict:
        return json.loads(self.requests[index].content)


def page(values, next_link=None, **extra) -> httpx.Response:
    payload = {"value": values, **extra}
    if next_link:
        payload["@odata.nextLink"] = next_link
    return httpx.Response(200, json=payload)


class FakeGraph:
    """Stands in for GraphClient in operation tests."""

    def __init__(self, users=None, members=None, existing_members=()):
        self.users = users or []
        self.members = members or []
        self.existing_members = set(existing_members)
        self.added: list[list[str]] = []
        self.removed: list[str] = []
        self.deleted: list[tuple[str, str]] = []
        self.missing: set[str] = set()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    async def get_all_pages(self, endpoint, params=None, beta=False):
        if endpoint == "users":
            return self.users
        return self.members

    async def get_all_pages_stream(self, endpoint, params=None, beta=False):
        for item in await self.get_all_pages(endpoint, params, beta):
            yield item

    async def add_members(self, group_id, member_ids):
        ids = list(member_ids)
        if self.existing_members.intersection(ids):
            raise GraphAPIError(
                400,
                "One or more added object references already exist for the following modified properties: 'members'.",
                f"groups/{group_id}",
            )
        self.added.append(ids)
        return 1

    async def remove_member(self, group_id, member_id):
        if member_id in self.missing:
            raise GraphAPIError(404, "Resource does not exist", f"groups/{group_id}")
        self.removed.append(member_id)
        return {}

    async def delete_object(self, object_type, object_id):
        if object_id in self.missing:
            raise GraphAPIError(404, "Resource does not exist", object_id)
        self.deleted.append((object_type, object_id))
        return {}

    def get_stats(self):
        return {"total_requests": 0}


class FakeCompliance:
    """Stands in for ComplianceClient; shares state across sessions."""

    def __init__(self, segments=None, policies=None):
        self.segments = list(segments or [])
        self.policies = list(policies or [])
        self.calls: list[tuple] = []
        self.fail_segments: set[str] = set()
        self.fail_policies: set[str] = set()
        self.throttled_reads = 0
        self.throttled_applies = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    def _throttle_read(self):
        if self.throttled_reads:
            self.throttled_reads -= 1
            raise RateLimitWarning("Get: requests are being throttled", retry_after=0)

    async def get_segments(self):
        self._throttle_read()
        return list(self.segments)

    async def get_policies(self):
        self._throttle_read()
        return list(self.policies)

    async def new_segment(self, name, user_group_filter):
        self.calls.append(("New-OrganizationSegment", name, user_group_filter))
        if name in self.fail_segments:
            raise RuntimeError(f"cannot create {name}")
        self.segments.append({"Name": name, "UserGroupFilter": user_group_filter})
        return CmdletResult("New-OrganizationSegment")

    async def new_policy(self, name, assigned_segment, segments_allowed, state="Active"):
        self.calls.append(("New-InformationBarrierPolicy", name, assigned_segment, tuple(segments_allowed)))
        self.policies.append({"Name": name, "AssignedSegment": assigned_segment, "State": state})
        return CmdletResult("New-InformationBarrierPolicy")

    async def set_policy_state(self, identity, state):
        self.calls.append(("Set-InformationBarrierPolicy", identity, state))
        return CmdletResult("Set-InformationBarrierPolicy")

    async def remove_policy(self, identity):
        self.calls.append(("Remove-InformationBarrierPolicy", identity))
        if identity in self.fail_policies:
            raise RuntimeError(f"cannot remove {identity}")
        return CmdletResult("Remove-InformationBarrierPolicy")

    async def remove_segment(self, identity):
        self.calls.append(("Remove-OrganizationSegment", identity))
        return CmdletResult("Remove-OrganizationSegment")

    async def start_policy_application(self):
        self.calls.append(("Start-InformationBarrierPoliciesApplication",))
        if self.throttled_applies:
            self.throttled_applies -= 1
            raise RateLimitWarning("throttled", retry_after=0)
        return CmdletResult("Start-InformationBarrierPoliciesApplication")

    def cmdlets(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def guardian():
    return WriteGuard()


@pytest.fixture
def fast_batch():
    return BatchConfig(
        workers=3,
        delay_seconds=0,
        backoff_seconds=0,
        max_backoff_seconds=0,
        max_retries=2,
        poll_interval=0.01,
        timeout_seconds=5,
    )


@pytest.fixture
def tool_config(tmp_path, fast_batch):
    config = ToolConfig(batch=fast_batch, output=OutputConfig(base_dir=str(tmp_path / "out")))
    config.assume_yes = True
    config.output.create_directories()
    return config


@pytest.fixture
def make_context(tool_config, guardian) -> Callable[..., OperationContext]:
    def _make(graph=None, compliance=None, store=None):
        return OperationContext(
            config=tool_config,
            guardian=guardian,
            run_id="test",
            graph_factory=lambda: graph,
            compliance_factory=lambda: compliance,
            store=store,
        )
    return _make
