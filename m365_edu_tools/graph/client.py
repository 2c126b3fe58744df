"""
Async Graph API client with pagination, throttling, retry, and write guarding.
Pages are exposed together with their next link so callers can checkpoint
and resume a long export.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncGenerator, Iterable, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    GRAPH_BETA_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES_PER_ENDPOINT,
    MEMBER_BIND_CHUNK,
)
from ..safety.guardian import WriteGuard

logger = logging.getLogger("m365_edu_tools.graph")

DIRECTORY_OBJECT_PATHS = {
    "users": "users",
    "groups": "groups",
    "administrativeUnits": "directory/administrativeUnits",
}


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


@dataclass
class GraphPage:
    """One page of a collection and the link to the next one."""
    items: list[dict] = field(default_factory=list)
    next_link: Optional[str] = None


def skip_token_from_link(next_link: Optional[str]) -> Optional[str]:
    """Extract the $skiptoken value from an @odata.nextLink URL."""
    if not next_link:
        return None
    query = parse_qs(urlparse(next_link).query)
    for key in ("$skiptoken", "$skipToken", "skiptoken"):
        if key in query:
            return query[key][0]
    return None


class GraphClient:
    """
    Async Microsoft Graph API client. One instance is one session.
    Features:
      - Automatic pagination with @odata.nextLink, resumable from a saved link
      - Exponential backoff on 429/503/504 honoring Retry-After
      - Guarded writes (audited, or skipped in what-if mode)
      - v1.0 and beta endpoint support
    """

    def __init__(
        self,
        access_token: str,
        guardian: WriteGuard,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = MAX_PAGES_PER_ENDPOINT,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self.page_size = page_size
        self.max_pages = max_pages
        self.initial_backoff = initial_backoff
        self._transport = transport
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "ConsistencyLevel": "eventual",  # Required for $count, $search
            },
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, endpoint: str, beta: bool = False) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{version}/{endpoint}"

    # ── Reads ────────────────────────────────────────────────────────────

    async def iter_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        start_url: Optional[str] = None,
        skip_token: Optional[str] = None,
    ) -> AsyncGenerator[GraphPage, None]:
        """
        Yield each page of a collection with its @odata.nextLink.
        start_url resumes from a previously saved next link; skip_token
        starts the first request at the given $skiptoken.
        """
        if start_url:
            url: Optional[str] = start_url
            params = None  # the saved link carries every query option
        else:
            url = self._build_url(endpoint, beta=beta)
            params = dict(params or {})
            params.setdefault("$top", str(self.page_size))
            if skip_token:
                params["$skiptoken"] = skip_token

        pages = 0
        while url and pages < self.max_pages:
            self.guardian.validate_request("GET", url)
            data = await self._execute_with_retry("GET", url, params=params)

            # Surface 403 Forbidden instead of silently returning empty
            if data.get("_forbidden"):
                raise GraphAPIError(
                    403,
                    data.get("_error_message", "Forbidden — missing API permission"),
                    url,
                )

            next_link = data.get("@odata.nextLink")
            yield GraphPage(items=data.get("value", []), next_link=next_link)

            url = next_link
            params = None  # nextLink contains all params
            pages += 1

        if url and pages >= self.max_pages:
            logger.warning(
                f"Pagination safety cap reached ({self.max_pages} pages) "
                f"for endpoint: {endpoint}"
            )

    async def get_all_pages_stream(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> AsyncGenerator[dict, None]:
        """Stream all items of a paginated endpoint one at a time."""
        async for page in self.iter_pages(endpoint, params, beta):
            for item in page.items:
                yield item

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> list[dict]:
        """Fetch all pages of a paginated endpoint into a list."""
        return [item async for item in self.get_all_pages_stream(endpoint, params, beta)]

    # ── Writes ───────────────────────────────────────────────────────────

    async def patch(self, endpoint: str, json_body: dict, beta: bool = False) -> dict:
        return await self._write("PATCH", endpoint, json_body, beta)

    async def delete(self, endpoint: str, beta: bool = False) -> dict:
        return await self._write("DELETE", endpoint, None, beta)

    async def _write(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict],
        beta: bool,
    ) -> dict:
        url = self._build_url(endpoint, beta=beta)
        if not self.guardian.validate_request(method, url, json_body):
            return {"_what_if": True}
        return await self._execute_with_retry(method, url, json_body=json_body)

    def directory_object_ref(self, object_id: str) -> str:
        return f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/directoryObjects/{object_id}"

    async def add_members(self, group_id: str, member_ids: Iterable[str]) -> int:
        """
        Add members to a group with members@odata.bind, 20 per request.
        Returns the number of requests sent (or planned in what-if mode).
        """
        ids = list(member_ids)
        requests = 0
        for i in range(0, len(ids), MEMBER_BIND_CHUNK):
            chunk = ids[i:i + MEMBER_BIND_CHUNK]
            await self.patch(
                f"groups/{group_id}",
                {"members@odata.bind": [self.directory_object_ref(m) for m in chunk]},
            )
            requests += 1
        return requests

    async def remove_member(self, group_id: str, member_id: str) -> dict:
        return await self.delete(f"groups/{group_id}/members/{member_id}/$ref")

    async def delete_object(self, object_type: str, object_id: str) -> dict:
        """Delete a user, group or administrative unit by id."""
        try:
            path = DIRECTORY_OBJECT_PATHS[object_type]
        except KeyError:
            raise ValueError(
                f"Unknown object type '{object_type}'. "
                f"Expected one of: {', '.join(DIRECTORY_OBJECT_PATHS)}"
            )
        return await self.delete(f"{path}/{object_id}")

    # ── Transport ────────────────────────────────────────────────────────

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = self.initial_backoff
        last_status = 0

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._execute_raw(
                    method, url, params=params, json_body=json_body
                )
                self._request_count += 1
                last_status = response.status_code

                if response.status_code in (200, 201, 202):
                    if not response.content or not response.content.strip():
                        return {"value": []}
                    try:
                        return response.json()
                    except ValueError:
                        logger.debug(f"{response.status_code} response with non-JSON body from {url}")
                        return {"value": []}

                if response.status_code == 204:
                    return {}

                if response.status_code in (429, 503, 504):
                    self._throttle_count += 1
                    retry_after = float(
                        response.headers.get("Retry-After", backoff)
                    )
                    wait_time = max(retry_after, backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {url}. "
                        f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                    )
                    if attempt == MAX_RETRIES:
                        break
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                error_msg = self._error_message(response)

                if method == "GET" and response.status_code == 404:
                    logger.debug(f"404 Not Found: {url}")
                    return {"value": [], "_not_found": True}

                if method == "GET" and response.status_code == 403:
                    logger.warning(f"403 Forbidden: {url} — {error_msg}")
                    return {"value": [], "_forbidden": True, "_error_message": error_msg}

                raise GraphAPIError(response.status_code, error_msg, url)

            except httpx.TimeoutException:
                logger.warning(f"Timeout on {url}, attempt {attempt + 1}/{MAX_RETRIES}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

            except httpx.ConnectError as e:
                logger.warning(f"Connection error on {url}: {e}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise GraphAPIError(last_status or 429, "Retries exhausted", url)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error_body = response.json() if response.content else {}
        except ValueError:
            return response.text[:200]
        return error_body.get("error", {}).get("message", response.text[:200])

    async def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        """Execute raw HTTP request."""
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")
        return await self._client.request(method, url, params=params, json=json_body)

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }
