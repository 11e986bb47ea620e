"""siege_etl.shared

Shared utilities used by the event sync and member sync modes.
Includes the exception taxonomy, EventSyncCounters, member lookup helpers,
and report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psycopg


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ProviderError(Exception):
    """Raised when the competition provider cannot be reached or answers non-2xx.

    A ProviderError never means "no data": callers must leave state untouched
    and retry on a later run.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedRecordError(Exception):
    """Raised when a provider record does not match the expected schema."""


class AwardTransactionError(Exception):
    """Raised when the atomic points award for a competition was rolled back."""

    def __init__(self, external_id: int, cause: Exception) -> None:
        super().__init__(f"award transaction failed for competition {external_id}: {cause}")
        self.external_id = external_id
        self.cause = cause


# ---------------------------------------------------------------------------
# EventSyncCounters
# ---------------------------------------------------------------------------

@dataclass
class EventSyncCounters:
    # Ingestion
    competitions_listed: int = 0
    competitions_rejected: int = 0
    events_inserted: int = 0
    events_updated: int = 0
    ingest_errors: int = 0
    # Completion processing
    completed_seen: int = 0
    competitions_awarded: int = 0
    skipped_processed: int = 0
    skipped_old: int = 0
    skipped_locked: int = 0
    closed_no_participants: int = 0
    closed_no_members: int = 0
    competitions_failed: int = 0
    # Per-member
    results_inserted: int = 0
    points_awarded: int = 0
    unresolved_members: int = 0
    # Winner cache
    winners_backfilled: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Member Directory helpers
# ---------------------------------------------------------------------------

def resolve_member_by_username(
    conn: psycopg.Connection,
    username_norm: str,
) -> int | None:
    row = conn.execute(
        "SELECT member_id FROM member WHERE lower(username) = %s ORDER BY member_id ASC LIMIT 1",
        (username_norm,),
    ).fetchone()
    return int(row[0]) if row else None


def resolve_member_by_display_name(
    conn: psycopg.Connection,
    display_name_norm: str,
) -> int | None:
    """Match a provider display name against stored usernames or display names.

    A renamed player's new display name is usually what the roster holds as
    its username, so both columns are searched; username hits win.
    """
    row = conn.execute(
        """
        SELECT member_id FROM member
        WHERE lower(username) = %s OR lower(display_name) = %s
        ORDER BY (lower(username) = %s) DESC, member_id ASC
        LIMIT 1
        """,
        (display_name_norm, display_name_norm, display_name_norm),
    ).fetchone()
    return int(row[0]) if row else None


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    params: dict[str, Any],
    counters: dict[str, Any],
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **params,
        "counters": counters,
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
