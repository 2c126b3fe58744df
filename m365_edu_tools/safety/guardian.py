"""
Write Guard — Gatekeeper for every mutating request.
Records all writes for audit, suppresses them in what-if mode, and owns
the interactive confirmation prompt.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("m365_edu_tools.safety")

# ─── HTTP Methods ────────────────────────────────────────────────────────────

READ_METHODS = {"GET", "HEAD", "OPTIONS"}
WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WriteGuard:
    """
    Validates every outbound request before it is sent.
    Reads always pass. Writes pass and are audited, unless what-if mode is
    on, in which case they are recorded as planned and must not be sent.
    """

    def __init__(self, what_if: bool = False):
        self.what_if = what_if
        self.performed: list[dict] = []
        self.planned: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = _utc_now()

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Return True if the request may be sent, False if it must be skipped.
        Raises ValueError for methods that are neither reads nor writes.
        """
        self.checks_performed += 1
        method_upper = method.upper()

        if method_upper in READ_METHODS:
            return True

        if method_upper not in WRITE_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")

        record = {
            "timestamp": _utc_now(),
            "method": method_upper,
            "url": url,
            "body": body,
        }
        if self.what_if:
            self.planned.append(record)
            logger.info(f"What-if: would send {method_upper} {url}")
            return False

        self.performed.append(record)
        logger.debug(f"Write: {method_upper} {url}")
        return True

    def get_audit_record(self) -> dict:
        """Return the write audit record."""
        return {
            "write_guard": {
                "mode": "WHAT-IF" if self.what_if else "LIVE",
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "writes_performed": len(self.performed),
                "writes_planned": len(self.planned),
                "planned": self.planned,
            }
        }

    @staticmethod
    def print_banner(what_if: bool):
        """Print the mode banner before a mutating command."""
        print("=" * 75)
        if what_if:
            print("  WHAT-IF MODE -- NO CHANGES WILL BE MADE")
            print("  * Every write is logged as planned and skipped")
        else:
            print("  LIVE MODE -- CHANGES WILL BE MADE TO THE TENANT")
            print("  * Every write is recorded in the run summary")
        print("=" * 75)


def confirm(message: str, assume_yes: bool = False) -> bool:
    """Ask a yes/no question on stdin. EOF or anything but y/yes is a no."""
    if assume_yes:
        return True
    try:
        answer = input(f"{message} [y/N]: ")
    except EOFError:
        print(file=sys.stderr)
        return False
    return answer.strip().lower() in ("y", "yes")
