"""
Base operation class — contract for bulk mutating jobs.

An operation gathers its targets, shows a summary, asks for confirmation,
then runs each phase through the batch runner and records every outcome.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from ..batch.runner import BatchReport, BatchRunner
from ..checkpoint.store import CheckpointStore
from ..compliance.client import RateLimitWarning
from ..config import ToolConfig
from ..reporting.csv_export import export_batch_report
from ..safety.guardian import WriteGuard, confirm

logger = logging.getLogger("m365_edu_tools.operations")

PREVIEW_LIMIT = 10

T = TypeVar("T")


@dataclass
class OperationContext:
    """Everything an operation needs to open sessions and record results."""
    config: ToolConfig
    guardian: WriteGuard
    run_id: str
    graph_factory: Callable[[], Any]
    compliance_factory: Optional[Callable[[], Any]] = None
    store: Optional[CheckpointStore] = None


def merge_reports(*reports: BatchReport) -> BatchReport:
    merged = BatchReport()
    for report in reports:
        merged.outcomes.extend(report.outcomes)
        merged.duration_seconds += report.duration_seconds
    return merged


class BaseOperation(ABC):
    """
    Abstract base class for all bulk operations.
    Simple operations implement targets(), key() and apply(); multi-phase
    operations override execute() and call run_phase() for each phase.
    """

    name: str = "base"
    description: str = "Base operation"
    session: str = "graph"  # "graph" or "compliance"

    def __init__(self, ctx: OperationContext):
        self.ctx = ctx

    @property
    def what_if(self) -> bool:
        return self.ctx.config.what_if

    def session_factory(self) -> Any:
        if self.session == "compliance":
            if self.ctx.compliance_factory is None:
                raise RuntimeError(f"{self.name} needs a compliance session factory")
            return self.ctx.compliance_factory()
        return self.ctx.graph_factory()

    @abstractmethod
    async def targets(self) -> list:
        """Return the items this operation will act on."""
        raise NotImplementedError

    def key(self, item: Any) -> str:
        return str(item)

    async def apply(self, session: Any, item: Any) -> Any:
        """Perform the mutation for one item."""
        raise NotImplementedError

    def confirm_message(self, count: int) -> str:
        return f"{self.description}: proceed with {count} items?"

    def preview(self, items: list, label: str = "") -> None:
        print(f"\n  {label or self.description}: {len(items)} items")
        for item in items[:PREVIEW_LIMIT]:
            print(f"    • {self.key(item)}")
        if len(items) > PREVIEW_LIMIT:
            print(f"    … and {len(items) - PREVIEW_LIMIT} more")

    async def read_with_backoff(self, read: Callable[[Any], Awaitable[T]]) -> T:
        """Run a read in its own session, retrying while the service throttles."""
        batch = self.ctx.config.batch
        backoff = batch.backoff_seconds
        attempts = 0
        while True:
            attempts += 1
            try:
                async with self.session_factory() as session:
                    return await read(session)
            except RateLimitWarning as e:
                if attempts > batch.max_retries:
                    raise
                wait = max(backoff, e.retry_after)
                logger.warning(f"[{self.name}] Read throttled; retrying in {wait:.1f}s")
                await asyncio.sleep(wait)
                backoff = min(backoff * 2, batch.max_backoff_seconds)

    def confirmed(self, message: str) -> bool:
        # What-if runs never write, so there is nothing to confirm
        if self.what_if:
            return True
        return confirm(message, self.ctx.config.assume_yes)

    async def run_phase(
        self,
        phase: str,
        items: Iterable[Any],
        action: Callable[[Any, Any], Awaitable[Any]],
        key: Optional[Callable[[Any], str]] = None,
    ) -> BatchReport:
        """Run one phase through the batch runner and write its results CSV."""
        items = list(items)
        key = key or self.key
        store = self.ctx.store
        job_key = f"{self.name}:{phase}"
        tracking = store is not None and not self.what_if

        if not items:
            logger.info(f"[{self.name}] Phase {phase}: nothing to do.")
            return BatchReport()

        runner = BatchRunner(self.session_factory, self.ctx.config.batch)
        report = await runner.run(
            items,
            action,
            key=key,
            skip=store.done_items(job_key) if tracking else None,
            on_done=(lambda k: store.mark_done(job_key, k)) if tracking else None,
        )
        if tracking and report.ok:
            store.clear_job(job_key)

        path = self.ctx.config.output.csv_dir / f"{self.name}_{phase}_{self.ctx.run_id}.csv"
        export_batch_report(report, path)
        counts = report.counts()
        print(f"  📊 {phase}: {counts} → {path}")
        return report

    async def execute(self) -> Optional[BatchReport]:
        """
        Gather targets, confirm, and run. Returns None when the user declines.
        """
        items = await self.targets()
        if not items:
            print(f"  ✅ {self.description}: nothing to do.")
            return BatchReport()

        self.preview(items)
        if not self.confirmed(self.confirm_message(len(items))):
            print("  ⏭  Cancelled.")
            return None

        return await self.run_phase("apply", items, self.apply)
