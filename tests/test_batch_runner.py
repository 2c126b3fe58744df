"""Tests for static partitioning and the worker-session batch runner."""

import asyncio

import pytest

from m365_edu_tools.batch.runner import BatchRunner, partition
from m365_edu_tools.compliance.client import CmdletResult, RateLimitWarning
from m365_edu_tools.graph.client import GraphAPIError


class Session:
    opened = 0

    def __init__(self, fail=False):
        self.fail = fail

    async def __aenter__(self):
        if self.fail:
            raise ConnectionError("cannot connect")
        Session.opened += 1
        return self

    async def __aexit__(self, *args):
        return None


@pytest.fixture(autouse=True)
def reset_sessions():
    Session.opened = 0


@pytest.mark.parametrize("count,workers,sizes", [
    (10, 3, [4, 3, 3]),
    (9, 3, [3, 3, 3]),
    (2, 3, [1, 1]),
    (1, 1, [1]),
    (0, 3, []),
])
def test_partition_sizes(count, workers, sizes):
    chunks = partition(list(range(count)), workers)
    assert [len(c) for c in chunks] == sizes
    assert [i for c in chunks for i in c] == list(range(count))


def test_partition_rejects_zero_workers():
    with pytest.raises(ValueError):
        partition([1, 2], 0)


@pytest.mark.asyncio
async def test_all_items_succeed_across_sessions(fast_batch):
    seen = []

    async def action(session, item):
        seen.append(item)

    report = await BatchRunner(Session, fast_batch).run(range(7), action)

    assert sorted(seen) == list(range(7))
    assert report.ok
    assert report.counts()["succeeded"] == 7
    assert Session.opened == 3
    assert {o.worker for o in report.outcomes} == {0, 1, 2}


@pytest.mark.asyncio
async def test_rate_limited_item_is_retried(fast_batch):
    calls = {}

    async def action(session, item):
        calls[item] = calls.get(item, 0) + 1
        if item == "b" and calls[item] == 1:
            raise RateLimitWarning("throttled", retry_after=0)

    report = await BatchRunner(Session, fast_batch).run(["a", "b", "c"], action)

    assert report.ok
    outcome = next(o for o in report.outcomes if o.key == "b")
    assert outcome.attempts == 2
    assert calls["b"] == 2


@pytest.mark.asyncio
async def test_graph_throttling_is_retried_but_other_errors_fail(fast_batch):
    calls = {}

    async def action(session, item):
        calls[item] = calls.get(item, 0) + 1
        if item == "throttled" and calls[item] == 1:
            raise GraphAPIError(429, "Retries exhausted", "url")
        if item == "missing":
            raise GraphAPIError(404, "not found", "url")

    report = await BatchRunner(Session, fast_batch).run(["throttled", "missing"], action)

    statuses = {o.key: o.status for o in report.outcomes}
    assert statuses == {"throttled": "succeeded", "missing": "failed"}
    assert calls["missing"] == 1


@pytest.mark.asyncio
async def test_item_fails_after_max_retries(fast_batch):
    async def action(session, item):
        raise RateLimitWarning("throttled", retry_after=0)

    report = await BatchRunner(Session, fast_batch).run(["x"], action)

    assert not report.ok
    assert report.failed[0].attempts == fast_batch.max_retries + 1
    assert "rate limited" in report.failed[0].detail


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_worker(fast_batch):
    fast_batch.workers = 1

    async def action(session, item):
        if item == 2:
            raise RuntimeError("boom")

    report = await BatchRunner(Session, fast_batch).run([1, 2, 3], action)

    assert [o.status for o in report.outcomes] == ["succeeded", "failed", "succeeded"]
    assert "boom" in report.failed[0].detail


@pytest.mark.asyncio
async def test_rate_limit_warning_on_success_still_counts(fast_batch):
    async def action(session, item):
        return CmdletResult("New-OrganizationSegment", warnings=["throttling in effect"])

    report = await BatchRunner(Session, fast_batch).run(["a"], action)

    assert report.ok
    assert report.outcomes[0].attempts == 1


@pytest.mark.asyncio
async def test_unfinished_items_time_out(fast_batch):
    fast_batch.workers = 1
    fast_batch.timeout_seconds = 0.05

    async def action(session, item):
        if item == "slow":
            await asyncio.sleep(10)

    report = await BatchRunner(Session, fast_batch).run(["fast", "slow", "never"], action)

    statuses = {o.key: o.status for o in report.outcomes}
    assert statuses == {"fast": "succeeded", "slow": "timed_out", "never": "timed_out"}
    assert not report.ok


@pytest.mark.asyncio
async def test_skip_and_on_done(fast_batch):
    done = []

    async def action(session, item):
        pass

    report = await BatchRunner(Session, fast_batch).run(
        ["a", "b", "c", "a"], action, skip={"b"}, on_done=done.append
    )

    assert sorted(done) == ["a", "c"]
    assert [(o.key, o.detail) for o in report.skipped] == [("b", "already done"), ("a", "duplicate")]
    assert len(report.outcomes) == 4
    assert report.ok


@pytest.mark.asyncio
async def test_session_failure_fails_its_chunk(fast_batch):
    async def action(session, item):
        pass

    report = await BatchRunner(lambda: Session(fail=True), fast_batch).run(["a", "b"], action)

    assert [o.status for o in report.outcomes] == ["failed", "failed"]
    assert "cannot connect" in report.outcomes[0].detail


@pytest.mark.asyncio
async def test_empty_input(fast_batch):
    async def action(session, item):
        pass

    report = await BatchRunner(Session, fast_batch).run([], action)

    assert report.outcomes == []
    assert report.ok
    assert Session.opened == 0
