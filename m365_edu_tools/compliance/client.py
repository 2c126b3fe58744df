"""
Async client for the Security & Compliance admin API.
Invokes information barrier cmdlets through the REST InvokeCommand endpoint
used by the Exchange Online management module.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from ..config import COMPLIANCE_BASE_URL
from ..safety.guardian import WriteGuard

logger = logging.getLogger("m365_edu_tools.compliance")

RATE_LIMIT_PATTERN = re.compile(
    r"throttl|rate limit|exceeded the (maximum|limit)|too many requests|try again later",
    re.IGNORECASE,
)

# Retry-After is absent on most compliance throttling responses
DEFAULT_RATE_LIMIT_DELAY = 60.0


class ComplianceAPIError(Exception):
    """Raised when a cmdlet invocation fails."""
    def __init__(self, status_code: int, message: str, cmdlet: str):
        self.status_code = status_code
        self.cmdlet = cmdlet
        super().__init__(f"{cmdlet} failed ({status_code}): {message}")


class RateLimitWarning(Exception):
    """Raised when the service refused a call because of throttling."""
    def __init__(self, message: str, retry_after: float = DEFAULT_RATE_LIMIT_DELAY):
        self.retry_after = retry_after
        super().__init__(message)


@dataclass
class CmdletResult:
    cmdlet: str
    values: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    what_if: bool = False

    @property
    def rate_limited(self) -> bool:
        """True when the call succeeded but the service warned about throttling."""
        return any(RATE_LIMIT_PATTERN.search(w) for w in self.warnings)


def is_read_cmdlet(cmdlet: str) -> bool:
    return cmdlet.split("-", 1)[0].lower() == "get"


class ComplianceClient:
    """
    One compliance session. Use as an async context manager.
    """

    def __init__(
        self,
        access_token: str,
        tenant_id: str,
        guardian: WriteGuard,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = COMPLIANCE_BASE_URL,
    ):
        self.access_token = access_token
        self.tenant_id = tenant_id
        self.guardian = guardian
        self.url = f"{base_url.rstrip('/')}/{tenant_id}/InvokeCommand"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_count = 0

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(120.0, connect=30.0),
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "X-ResponseFormat": "json",
            },
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def invoke(self, cmdlet: str, parameters: Optional[dict[str, Any]] = None) -> CmdletResult:
        """Run a cmdlet and collect every page of its output."""
        if not self._client:
            raise RuntimeError("ComplianceClient not initialized. Use 'async with' context.")

        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters or {}}}
        # The transport is always POST; the guard sees the cmdlet's intent.
        intent = "GET" if is_read_cmdlet(cmdlet) else "POST"
        result = CmdletResult(cmdlet=cmdlet)
        if not self.guardian.validate_request(intent, f"{self.url}#{cmdlet}", body):
            result.what_if = True
            return result

        url: Optional[str] = self.url
        while url:
            response = await self._client.post(url, json=body)
            self._request_count += 1
            data = self._handle_response(cmdlet, response)

            result.values.extend(data.get("value", []))
            for warning in data.get("@adminapi.warnings", []) or []:
                result.warnings.append(str(warning))
                logger.warning(f"{cmdlet}: {warning}")
            url = data.get("@odata.nextLink")

        # A throttled read may be missing rows; writes are complete and back off once
        if result.rate_limited and is_read_cmdlet(cmdlet):
            raise RateLimitWarning(f"{cmdlet}: {'; '.join(result.warnings)}")
        return result

    @staticmethod
    def _handle_response(cmdlet: str, response: httpx.Response) -> dict:
        if response.status_code in (429, 503):
            retry_after = float(response.headers.get("Retry-After", DEFAULT_RATE_LIMIT_DELAY))
            raise RateLimitWarning(
                f"{cmdlet} throttled ({response.status_code})", retry_after=retry_after
            )

        if response.status_code >= 400:
            try:
                error = response.json().get("error", {})
                message = error.get("message", response.text[:200])
            except ValueError:
                message = response.text[:200]
            if RATE_LIMIT_PATTERN.search(message):
                raise RateLimitWarning(f"{cmdlet}: {message}")
            raise ComplianceAPIError(response.status_code, message, cmdlet)

        if not response.content or not response.content.strip():
            return {}
        return response.json()

    # ── Organization segments ────────────────────────────────────────────

    async def get_segments(self) -> list[dict]:
        return (await self.invoke("Get-OrganizationSegment")).values

    async def new_segment(self, name: str, user_group_filter: str) -> CmdletResult:
        return await self.invoke(
            "New-OrganizationSegment",
            {"Name": name, "UserGroupFilter": user_group_filter},
        )

    async def remove_segment(self, identity: str) -> CmdletResult:
        return await self.invoke(
            "Remove-OrganizationSegment", {"Identity": identity, "Confirm": False}
        )

    # ── Information barrier policies ─────────────────────────────────────

    async def get_policies(self) -> list[dict]:
        return (await self.invoke("Get-InformationBarrierPolicy")).values

    async def new_policy(
        self,
        name: str,
        assigned_segment: str,
        segments_allowed: list[str],
        state: str = "Active",
    ) -> CmdletResult:
        return await self.invoke(
            "New-InformationBarrierPolicy",
            {
                "Name": name,
                "AssignedSegment": assigned_segment,
                "SegmentsAllowed": segments_allowed,
                "State": state,
                "Force": True,
            },
        )

    async def set_policy_state(self, identity: str, state: str) -> CmdletResult:
        return await self.invoke(
            "Set-InformationBarrierPolicy",
            {"Identity": identity, "State": state, "Force": True},
        )

    async def remove_policy(self, identity: str) -> CmdletResult:
        return await self.invoke(
            "Remove-InformationBarrierPolicy", {"Identity": identity, "Confirm": False}
        )

    async def start_policy_application(self) -> CmdletResult:
        return await self.invoke("Start-InformationBarrierPoliciesApplication")

    def get_stats(self) -> dict:
        return {"total_requests": self._request_count}
