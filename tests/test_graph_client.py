"""Tests for the Graph client: paging, resume, retry and guarded writes."""

import httpx
import pytest

from conftest import Recorder, page
from m365_edu_tools.graph.client import GraphAPIError, GraphClient, skip_token_from_link
from m365_edu_tools.safety.guardian import WriteGuard

NEXT = "https://graph.microsoft.com/v1.0/users?$top=2&$skiptoken=abc123"


def client_for(recorder, guardian=None, **kwargs):
    return GraphClient(
        "token",
        guardian or WriteGuard(),
        transport=recorder.transport,
        initial_backoff=0,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_iter_pages_follows_next_links():
    recorder = Recorder([
        page([{"id": "1"}, {"id": "2"}], NEXT),
        page([{"id": "3"}]),
    ])
    async with client_for(recorder, page_size=2) as graph:
        pages = [p async for p in graph.iter_pages("users", params={"$select": "id"})]

    assert [len(p.items) for p in pages] == [2, 1]
    assert pages[0].next_link == NEXT
    assert pages[1].next_link is None
    first = recorder.requests[0].url
    assert first.path == "/v1.0/users"
    assert first.params["$top"] == "2"
    assert first.params["$select"] == "id"
    assert recorder.requests[1].url.params["$skiptoken"] == "abc123"
    assert recorder.requests[0].headers["Authorization"] == "Bearer token"


@pytest.mark.asyncio
async def test_iter_pages_resumes_from_saved_link():
    recorder = Recorder([page([{"id": "3"}])])
    async with client_for(recorder) as graph:
        items = [i for p in [p async for p in graph.iter_pages("users", start_url=NEXT)] for i in p.items]

    assert items == [{"id": "3"}]
    assert recorder.requests[0].url.params["$skiptoken"] == "abc123"
    assert recorder.requests[0].url.params["$top"] == "2"


@pytest.mark.asyncio
async def test_iter_pages_starts_at_skip_token():
    recorder = Recorder([page([])])
    async with client_for(recorder) as graph:
        [p async for p in graph.iter_pages("groups", skip_token="tok")]

    assert recorder.requests[0].url.params["$skiptoken"] == "tok"


@pytest.mark.asyncio
async def test_page_cap_stops_paging():
    recorder = Recorder([page([{"id": "1"}], NEXT), page([{"id": "2"}], NEXT)])
    async with client_for(recorder, max_pages=1) as graph:
        items = await graph.get_all_pages("users")

    assert items == [{"id": "1"}]
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_throttled_request_is_retried():
    recorder = Recorder([
        httpx.Response(429, headers={"Retry-After": "0"}),
        page([{"id": "1"}]),
    ])
    async with client_for(recorder) as graph:
        items = await graph.get_all_pages("users")
        stats = graph.get_stats()

    assert items == [{"id": "1"}]
    assert stats == {"total_requests": 2, "throttle_events": 1}


@pytest.mark.asyncio
async def test_forbidden_page_raises():
    recorder = Recorder([
        httpx.Response(403, json={"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges"}}),
    ])
    async with client_for(recorder) as graph:
        with pytest.raises(GraphAPIError) as exc:
            await graph.get_all_pages("users")

    assert exc.value.status_code == 403
    assert "Insufficient privileges" in str(exc.value)


@pytest.mark.asyncio
async def test_write_error_raises_with_message():
    recorder = Recorder([
        httpx.Response(400, json={"error": {"code": "Request_BadRequest", "message": "already exist"}}),
    ])
    async with client_for(recorder) as graph:
        with pytest.raises(GraphAPIError) as exc:
            await graph.add_members("g1", ["u1"])

    assert exc.value.status_code == 400
    assert "already exist" in str(exc.value)


@pytest.mark.asyncio
async def test_add_members_binds_twenty_per_request():
    recorder = Recorder([httpx.Response(204)] * 3)
    ids = [f"user-{i}" for i in range(45)]
    async with client_for(recorder) as graph:
        sent = await graph.add_members("group-1", ids)

    assert sent == 3
    sizes = [len(recorder.body(i)["members@odata.bind"]) for i in range(3)]
    assert sizes == [20, 20, 5]
    assert recorder.requests[0].method == "PATCH"
    assert recorder.requests[0].url.path == "/v1.0/groups/group-1"
    assert recorder.body(0)["members@odata.bind"][0] == (
        "https://graph.microsoft.com/v1.0/directoryObjects/user-0"
    )


@pytest.mark.asyncio
async def test_remove_member_and_delete_paths():
    recorder = Recorder([httpx.Response(204), httpx.Response(204)])
    async with client_for(recorder) as graph:
        await graph.remove_member("g1", "u1")
        await graph.delete_object("administrativeUnits", "au1")

    assert [r.method for r in recorder.requests] == ["DELETE", "DELETE"]
    assert recorder.requests[0].url.path == "/v1.0/groups/g1/members/u1/$ref"
    assert recorder.requests[1].url.path == "/v1.0/directory/administrativeUnits/au1"


@pytest.mark.asyncio
async def test_delete_object_rejects_unknown_type():
    async with client_for(Recorder([])) as graph:
        with pytest.raises(ValueError):
            await graph.delete_object("devices", "d1")


@pytest.mark.asyncio
async def test_what_if_writes_are_not_sent():
    guard = WriteGuard(what_if=True)
    recorder = Recorder([page([{"id": "1"}])])
    async with client_for(recorder, guardian=guard) as graph:
        result = await graph.delete_object("users", "u1")
        items = await graph.get_all_pages("users")

    assert result == {"_what_if": True}
    assert items == [{"id": "1"}]
    assert [r.method for r in recorder.requests] == ["GET"]
    assert len(guard.planned) == 1
    assert guard.planned[0]["method"] == "DELETE"


def test_skip_token_from_link():
    assert skip_token_from_link(NEXT) == "abc123"
    assert skip_token_from_link("https://graph.microsoft.com/v1.0/users?$top=5") is None
    assert skip_token_from_link(None) is None


@pytest.mark.asyncio
async def test_client_requires_context():
    graph = GraphClient("token", WriteGuard())
    with pytest.raises(RuntimeError):
        await graph.get_all_pages("users")
