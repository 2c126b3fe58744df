"""
CSV input and output — streaming export sinks, id list readers, batch results.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Iterable


def _flatten(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ";".join(str(_flatten(v)) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str, ensure_ascii=False)
    return value


class CsvSink:
    """
    Append-friendly CSV writer for paged exports.
    The header is written only when the file is new or empty, so an export
    resumed from a checkpoint continues the same file.
    """

    def __init__(self, path: Path, fieldnames: list[str], append: bool = False):
        self.path = Path(path)
        self.fieldnames = fieldnames
        self.append = append
        self.rows_written = 0
        self._fh = None
        self._writer = None

    def __enter__(self) -> "CsvSink":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        existing = self.append and self.path.exists() and self.path.stat().st_size > 0
        mode = "a" if existing else "w"
        # The BOM only belongs at the start of a new file
        encoding = "utf-8" if existing else "utf-8-sig"
        self._fh = open(self.path, mode, newline="", encoding=encoding)
        self._writer = csv.DictWriter(self._fh, fieldnames=self.fieldnames, extrasaction="ignore")
        if not existing:
            self._writer.writeheader()
        return self

    def __exit__(self, *args):
        if self._fh:
            self._fh.close()
            self._fh = None

    def write_rows(self, rows: Iterable[dict]) -> int:
        if self._writer is None:
            raise RuntimeError("CsvSink not open. Use 'with' context.")
        count = 0
        for row in rows:
            self._writer.writerow({k: _flatten(row.get(k)) for k in self.fieldnames})
            count += 1
        self._fh.flush()
        self.rows_written += count
        return count


def read_csv_rows(path: Path) -> list[dict]:
    """Read a CSV file (with or without BOM) into a list of dicts."""
    with open(path, "r", newline="", encoding="utf-8-sig") as fh:
        return list(csv.DictReader(fh))


def read_id_column(path: Path, column: str = "id") -> list[str]:
    """
    Read one column of object ids. Blank and duplicate values are dropped;
    order is preserved.
    """
    with open(path, "r", newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        if not reader.fieldnames or column not in reader.fieldnames:
            raise ValueError(
                f"Column '{column}' not found in {path}. "
                f"Available columns: {', '.join(reader.fieldnames or [])}"
            )
        seen = {}
        for row in reader:
            value = (row.get(column) or "").strip()
            if value:
                seen.setdefault(value, None)
    return list(seen)


BATCH_FIELDS = ["key", "status", "attempts", "worker", "detail"]


def export_batch_report(report: Any, path: Path) -> Path:
    """Write one row per item outcome of a batch run."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=BATCH_FIELDS)
        writer.writeheader()
        for outcome in report.outcomes:
            writer.writerow({
                "key": outcome.key,
                "status": outcome.status,
                "attempts": outcome.attempts,
                "worker": outcome.worker,
                "detail": outcome.detail,
            })
    return path
