"""
Bounded fan-out batch runner.

Items are split into at most N contiguous chunks, one per worker session.
Each worker runs its chunk in order with a fixed pause between calls and
backs off when the service reports throttling. The coordinator polls the
workers until they finish or the overall timeout expires.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Any, AsyncContextManager, Awaitable, Callable, Iterable, Optional, Sequence, TypeVar

from ..compliance.client import RateLimitWarning
from ..config import BatchConfig
from ..graph.client import GraphAPIError

logger = logging.getLogger("m365_edu_tools.batch")

T = TypeVar("T")

SUCCEEDED = "succeeded"
FAILED = "failed"
TIMED_OUT = "timed_out"
SKIPPED = "skipped"
PENDING = "pending"


def partition(items: Sequence[T], workers: int) -> list[list[T]]:
    """
    Split items into at most `workers` contiguous, non-empty chunks whose
    sizes differ by at most one. Order is preserved.
    """
    if workers < 1:
        raise ValueError(f"workers must be at least 1, got {workers}")
    items = list(items)
    count = min(workers, len(items))
    if count == 0:
        return []

    size, extra = divmod(len(items), count)
    chunks = []
    start = 0
    for i in range(count):
        end = start + size + (1 if i < extra else 0)
        chunks.append(items[start:end])
        start = end
    return chunks


@dataclass
class ItemOutcome:
    key: str
    status: str = PENDING
    detail: str = ""
    attempts: int = 0
    worker: int = -1


@dataclass
class BatchReport:
    outcomes: list[ItemOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0

    def _with_status(self, status: str) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[ItemOutcome]:
        return self._with_status(SUCCEEDED)

    @property
    def failed(self) -> list[ItemOutcome]:
        return self._with_status(FAILED)

    @property
    def timed_out(self) -> list[ItemOutcome]:
        return self._with_status(TIMED_OUT)

    @property
    def skipped(self) -> list[ItemOutcome]:
        return self._with_status(SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.timed_out

    def counts(self) -> dict[str, int]:
        return {
            SUCCEEDED: len(self.succeeded),
            FAILED: len(self.failed),
            TIMED_OUT: len(self.timed_out),
            SKIPPED: len(self.skipped),
        }

    def to_dict(self) -> dict:
        return {
            "counts": self.counts(),
            "duration_seconds": round(self.duration_seconds, 2),
            "ok": self.ok,
            "outcomes": [asdict(o) for o in self.outcomes],
        }


class BatchRunner:
    """
    Runs `action(session, item)` for every item across worker sessions.

    session_factory() must return an async context manager yielding a
    session (a GraphClient or ComplianceClient); every worker opens its own.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncContextManager[Any]],
        config: BatchConfig,
    ):
        self.session_factory = session_factory
        self.config = config

    async def run(
        self,
        items: Iterable[T],
        action: Callable[[Any, T], Awaitable[Any]],
        key: Callable[[T], str] = str,
        skip: Optional[set[str]] = None,
        on_done: Optional[Callable[[str], None]] = None,
    ) -> BatchReport:
        started = time.monotonic()
        skip = skip or set()
        outcomes: dict[str, ItemOutcome] = {}
        duplicates: list[ItemOutcome] = []
        pending: list[T] = []

        for item in items:
            item_key = key(item)
            if item_key in outcomes:
                duplicates.append(ItemOutcome(item_key, SKIPPED, "duplicate"))
                continue
            if item_key in skip:
                outcomes[item_key] = ItemOutcome(item_key, SKIPPED, "already done")
                continue
            outcomes[item_key] = ItemOutcome(item_key)
            pending.append(item)

        chunks = partition(pending, self.config.workers) if pending else []
        total = len(pending)
        if chunks:
            logger.info(
                f"Running {total} items across {len(chunks)} sessions "
                f"({', '.join(str(len(c)) for c in chunks)})"
            )

        async def worker(index: int, chunk: list[T]):
            try:
                async with self.session_factory() as session:
                    for item in chunk:
                        outcome = outcomes[key(item)]
                        outcome.worker = index
                        await self._process(session, item, outcome, action, on_done)
            except Exception as e:
                logger.error(f"Worker {index} session failed: {type(e).__name__}: {e}")
                for item in chunk:
                    outcome = outcomes[key(item)]
                    if outcome.status == PENDING:
                        outcome.status = FAILED
                        outcome.worker = index
                        outcome.detail = f"session failed: {e}"

        tasks = {asyncio.create_task(worker(i, c)) for i, c in enumerate(chunks)}
        running = tasks
        while running:
            remaining = self.config.timeout_seconds - (time.monotonic() - started)
            if remaining <= 0:
                break
            _, running = await asyncio.wait(
                running, timeout=min(self.config.poll_interval, remaining)
            )
            finished = sum(1 for o in outcomes.values() if o.status in (SUCCEEDED, FAILED))
            logger.info(f"Progress: {finished}/{total} items, {len(running)} sessions running")

        if running:
            logger.warning(
                f"Batch timed out after {self.config.timeout_seconds}s; "
                f"stopping {len(running)} sessions"
            )
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)

        for outcome in outcomes.values():
            if outcome.status == PENDING:
                outcome.status = TIMED_OUT
                outcome.detail = "not finished before timeout"

        return BatchReport(
            outcomes=list(outcomes.values()) + duplicates,
            duration_seconds=time.monotonic() - started,
        )

    async def _process(
        self,
        session: Any,
        item: T,
        outcome: ItemOutcome,
        action: Callable[[Any, T], Awaitable[Any]],
        on_done: Optional[Callable[[str], None]],
    ):
        """Run one item, retrying it while the service reports throttling."""
        backoff = self.config.backoff_seconds

        while True:
            outcome.attempts += 1
            try:
                result = await action(session, item)
            except RateLimitWarning as e:
                wait = max(backoff, e.retry_after)
                reason = str(e)
            except GraphAPIError as e:
                if e.status_code != 429:
                    self._fail(outcome, str(e))
                    await asyncio.sleep(self.config.delay_seconds)
                    return
                wait = backoff
                reason = str(e)
            except Exception as e:
                self._fail(outcome, f"{type(e).__name__}: {e}")
                await asyncio.sleep(self.config.delay_seconds)
                return
            else:
                outcome.status = SUCCEEDED
                if on_done:
                    on_done(outcome.key)
                if getattr(result, "rate_limited", False):
                    logger.warning(
                        f"Rate-limit warning after {outcome.key}; pausing {backoff:.1f}s"
                    )
                    await asyncio.sleep(backoff)
                await asyncio.sleep(self.config.delay_seconds)
                return

            if outcome.attempts > self.config.max_retries:
                self._fail(outcome, f"rate limited after {outcome.attempts} attempts: {reason}")
                return
            logger.warning(
                f"Rate limited on {outcome.key} (attempt {outcome.attempts}); "
                f"backing off {wait:.1f}s"
            )
            await asyncio.sleep(wait)
            backoff = min(backoff * 2, self.config.max_backoff_seconds)

    @staticmethod
    def _fail(outcome: ItemOutcome, detail: str):
        outcome.status = FAILED
        outcome.detail = detail
        logger.error(f"{outcome.key} failed: {detail}")
