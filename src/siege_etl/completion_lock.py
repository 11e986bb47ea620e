"""siege_etl.completion_lock

Lease-based guard against double-awarding a competition.

The lease is event.processing_started_at. There is no external lock service;
correctness rests on three rules:

  1. Acquire is a single conditional UPDATE (compare-and-swap). PostgreSQL
     re-checks the WHERE clause after waiting on the row lock, so of two
     concurrent acquirers exactly one gets a row back.
  2. The acquire commits before any provider fetch or scoring starts.
  3. Release and mark-processed only touch the row while it still carries
     the caller's lease value, so a worker whose lease went stale and was
     reclaimed cannot clear someone else's lease.

A lease older than LEASE_STALE_AFTER belongs to a crashed or timed-out run
and may be reclaimed. A younger one makes the current run skip the event.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import psycopg

from siege_etl.ingest_events import COMPLETED, EventRecord
from siege_etl.normalize import one_month_before

log = logging.getLogger(__name__)

LEASE_STALE_AFTER = timedelta(hours=1)

SKIPPED_NO_PARTICIPANTS = "no_participants"
SKIPPED_TOO_OLD = "too_old"
SKIPPED_NO_MEMBERS = "no_members_resolved"


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def is_eligible(event: EventRecord) -> bool:
    return event.lifecycle_status == COMPLETED and not event.points_processed


def is_too_old(ends_at: datetime, now: datetime) -> bool:
    return ends_at < one_month_before(now)


# ---------------------------------------------------------------------------
# Lease operations
# ---------------------------------------------------------------------------

def lease_clock() -> datetime:
    return datetime.now(timezone.utc)


def acquire_lease(
    conn: psycopg.Connection,
    event_id: int,
    now: datetime | None = None,
) -> datetime | None:
    """Claim the event for processing. Returns the lease value, or None if not acquired.

    The lease is stamped with the wall clock at acquisition, not the run's
    start time, so a long run never takes a lease that is already stale.
    """
    now = now or lease_clock()
    with conn.transaction():
        row = conn.execute(
            """
            UPDATE event SET processing_started_at = %s
            WHERE id = %s
              AND lifecycle_status = 'completed'
              AND points_processed = false
              AND (processing_started_at IS NULL OR processing_started_at <= %s)
            RETURNING processing_started_at
            """,
            (now, event_id, now - LEASE_STALE_AFTER),
        ).fetchone()
    if row is None:
        return None
    return row[0]


def release_lease(
    conn: psycopg.Connection,
    event_id: int,
    lease: datetime,
) -> bool:
    """Failure path: drop the lease, leave points_processed false for a later retry."""
    with conn.transaction():
        cur = conn.execute(
            """
            UPDATE event SET processing_started_at = NULL, updated_at = now()
            WHERE id = %s AND processing_started_at = %s AND points_processed = false
            """,
            (event_id, lease),
        )
    released = cur.rowcount == 1
    if not released:
        log.warning("Lease on event %s was no longer ours at release", event_id)
    return released


def mark_processed(
    conn: psycopg.Connection,
    event_id: int,
    lease: datetime,
    skipped_reason: str | None = None,
) -> bool:
    """Set points_processed and clear the lease in one statement.

    Returns False when the caller no longer holds the lease (nothing changed).
    """
    with conn.transaction():
        cur = conn.execute(
            """
            UPDATE event SET
              points_processed = true,
              processing_started_at = NULL,
              skipped_reason = %s,
              updated_at = now()
            WHERE id = %s AND processing_started_at = %s AND points_processed = false
            """,
            (skipped_reason, event_id, lease),
        )
    return cur.rowcount == 1


def mark_too_old(
    conn: psycopg.Connection,
    event_id: int,
    now: datetime | None = None,
) -> bool:
    """Close a never-processed, long-finished event without scoring it.

    Refuses while another run holds a fresh lease on the event.
    """
    now = now or lease_clock()
    with conn.transaction():
        cur = conn.execute(
            """
            UPDATE event SET
              points_processed = true,
              processing_started_at = NULL,
              skipped_reason = %s,
              updated_at = now()
            WHERE id = %s
              AND points_processed = false
              AND (processing_started_at IS NULL OR processing_started_at <= %s)
            """,
            (SKIPPED_TOO_OLD, event_id, now - LEASE_STALE_AFTER),
        )
    return cur.rowcount == 1
