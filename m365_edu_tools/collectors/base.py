"""
Base collector class — pages one kind of object into a CSV sink.
Each written page is checkpointed by its next link so an interrupted export
can resume where it stopped.
"""

from __future__ import annotations

import logging
import time
from abc import ABC
from typing import Any, AsyncGenerator, Optional

from ..checkpoint.store import CheckpointStore
from ..config import PagingConfig, SDS_EXTENSION_PREFIX
from ..graph.client import GraphAPIError, GraphPage, skip_token_from_link
from ..reporting.csv_export import CsvSink

logger = logging.getLogger("m365_edu_tools.collectors")


class CollectorResult:
    """Standardized result from a collector."""

    def __init__(self, collector_name: str):
        self.collector_name = collector_name
        self.rows_written = 0
        self.pages = 0
        self.completed = False
        self.metadata: dict[str, Any] = {
            "collector": collector_name,
            "started_at": None,
            "completed_at": None,
            "duration_seconds": 0,
            "resumed_from_row": 0,
            "last_next_link": None,
            "errors": [],
            "warnings": [],
        }

    @property
    def last_skip_token(self) -> Optional[str]:
        return skip_token_from_link(self.metadata["last_next_link"])

    def add_error(self, error: str):
        self.metadata["errors"].append(error)
        logger.error(f"[{self.collector_name}] {error}")

    def add_warning(self, warning: str):
        self.metadata["warnings"].append(warning)
        logger.warning(f"[{self.collector_name}] {warning}")

    def to_dict(self) -> dict:
        return {
            "rows_written": self.rows_written,
            "pages": self.pages,
            "completed": self.completed,
            "metadata": self.metadata,
        }


def sds_columns(attributes: dict[str, str]) -> dict[str, str]:
    """Map short column names to full School Data Sync extension names."""
    return {short: f"{SDS_EXTENSION_PREFIX}{attr}" for short, attr in attributes.items()}


class BaseCollector(ABC):
    """
    Base class for all collectors.

    Subclasses set `endpoint`, `fields` and optionally `params`, `sds`
    (short column -> extension attribute) and `accept()`. Collectors whose
    source is not a Graph collection override `pages()`.
    """

    name: str = "base"
    description: str = "Base collector"
    endpoint: str = ""
    fields: list[str] = []
    params: dict[str, str] = {}
    sds: dict[str, str] = {}
    beta: bool = False

    def __init__(
        self,
        client: Any,
        config: PagingConfig,
        store: Optional[CheckpointStore] = None,
    ):
        self.client = client
        self.config = config
        self.store = store

    @property
    def checkpoint_key(self) -> str:
        return f"export:{self.name}"

    @property
    def columns(self) -> list[str]:
        return self.fields + list(self.sds)

    def has_checkpoint(self) -> bool:
        return bool(self.store and self.store.get_checkpoint(self.checkpoint_key))

    def query_params(self) -> dict[str, str]:
        params = dict(self.params)
        select = [f for f in self.fields if not f.startswith("@")] + list(self.sds.values())
        params.setdefault("$select", ",".join(select))
        return params

    async def pages(
        self,
        start_url: Optional[str] = None,
        skip_token: Optional[str] = None,
    ) -> AsyncGenerator[GraphPage, None]:
        async for page in self.client.iter_pages(
            self.endpoint,
            params=self.query_params(),
            beta=self.beta,
            start_url=start_url,
            skip_token=skip_token,
        ):
            yield page

    def accept(self, item: dict) -> bool:
        return True

    def to_row(self, item: dict) -> dict:
        row = {f: item.get(f) for f in self.fields}
        for short, attr in self.sds.items():
            row[short] = item.get(attr)
        return row

    async def execute(
        self,
        sink: CsvSink,
        resume: bool = False,
        skip_token: Optional[str] = None,
    ) -> CollectorResult:
        """
        Page the source into the sink with checkpointing and error capture.
        """
        result = CollectorResult(self.name)
        result.metadata["started_at"] = time.time()
        checkpointing = self.store is not None and self.config.checkpoints
        start_url = None
        total = 0

        if resume and self.store:
            checkpoint = self.store.get_checkpoint(self.checkpoint_key)
            if checkpoint:
                start_url = checkpoint.next_link
                total = checkpoint.rows_written
                result.metadata["resumed_from_row"] = total
                logger.info(f"[{self.name}] Resuming after {total} rows.")

        logger.info(f"[{self.name}] Starting export...")
        try:
            async for page in self.pages(start_url=start_url, skip_token=skip_token):
                rows = [self.to_row(item) for item in page.items if self.accept(item)]
                sink.write_rows(rows)
                result.rows_written += len(rows)
                result.pages += 1
                total += len(rows)
                result.metadata["last_next_link"] = page.next_link
                # Rows are on disk before the link that follows them is saved
                if checkpointing and page.next_link:
                    self.store.save_checkpoint(self.checkpoint_key, page.next_link, total)

            result.completed = True
            if checkpointing:
                self.store.clear_checkpoint(self.checkpoint_key)

        except GraphAPIError as e:
            if e.status_code == 403:
                result.add_warning(f"Permission denied: {self.endpoint} — {e}")
            else:
                result.add_error(f"Failed to page {self.endpoint}: {e}")
        except Exception as e:
            result.add_error(f"Export failed: {type(e).__name__}: {e}")
            logger.exception(f"[{self.name}] Export failed")

        result.metadata["completed_at"] = time.time()
        result.metadata["duration_seconds"] = round(
            result.metadata["completed_at"] - result.metadata["started_at"], 2
        )
        logger.info(
            f"[{self.name}] Finished in {result.metadata['duration_seconds']}s — "
            f"{result.rows_written} rows over {result.pages} pages"
        )
        return result
