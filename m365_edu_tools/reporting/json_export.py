"""
JSON exporter — Writes the summary of a single run.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .. import __version__


def export_run_summary(
    run_id: str,
    command: str,
    output_dir: Path,
    report: Optional[Any] = None,
    audit: Optional[dict] = None,
    stats: Optional[dict] = None,
    extra: Optional[dict] = None,
) -> Path:
    """
    Write the summary of a run to run_<run_id>.json.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    payload: dict[str, Any] = {
        "metadata": {
            "tool": "M365 Education Tools",
            "version": __version__,
            "run_id": run_id,
            "command": command,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
        },
    }
    if report is not None:
        payload["batch"] = report.to_dict()
    if audit:
        payload.update(audit)
    if stats:
        payload["client_stats"] = stats
    if extra:
        payload["details"] = extra

    filepath = output_dir / f"run_{run_id}.json"
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
