"""siege_etl.ingest_events

Ingestion of the provider's competition list into the event table.

Design decisions:
  - lifecycle_status is derived here from the run's clock, never taken from
    the provider: now < starts_at -> upcoming, now > ends_at -> completed,
    otherwise active.
  - Keyed upsert on external_id. Provider fields and status are overwritten
    on every pass; points_processed, processing_started_at, skipped_reason and
    winner_display_name are owned by the award pipeline and left alone
    (winner is only ever filled, never replaced).
  - One transaction block per competition: a failing upsert is logged,
    counted and skipped; the rest of the batch still lands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

import psycopg

from siege_etl.placement import compute_placements, winner_name
from siege_etl.provider_client import CompetitionSummary, WomClient
from siege_etl.shared import EventSyncCounters, ProviderError

log = logging.getLogger(__name__)

UPCOMING = "upcoming"
ACTIVE = "active"
COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Event record (row view)
# ---------------------------------------------------------------------------

@dataclass
class EventRecord:
    id: int
    external_id: int
    title: str
    ends_at: datetime
    lifecycle_status: str
    points_processed: bool
    processing_started_at: datetime | None
    winner_display_name: str | None
    inserted: bool = False


_EVENT_COLUMNS = """
    id, external_id, title, ends_at, lifecycle_status, points_processed,
    processing_started_at, winner_display_name
"""


def _row_to_record(row: tuple, inserted: bool = False) -> EventRecord:
    return EventRecord(
        id=int(row[0]),
        external_id=int(row[1]),
        title=row[2],
        ends_at=row[3],
        lifecycle_status=row[4],
        points_processed=bool(row[5]),
        processing_started_at=row[6],
        winner_display_name=row[7],
        inserted=inserted,
    )


def get_event(conn: psycopg.Connection, external_id: int) -> EventRecord | None:
    row = conn.execute(
        f"SELECT {_EVENT_COLUMNS} FROM event WHERE external_id = %s",
        (external_id,),
    ).fetchone()
    return _row_to_record(row) if row else None


# ---------------------------------------------------------------------------
# Derivations
# ---------------------------------------------------------------------------

def compute_lifecycle_status(now: datetime, starts_at: datetime, ends_at: datetime) -> str:
    if now > ends_at:
        return COMPLETED
    if now >= starts_at:
        return ACTIVE
    return UPCOMING


def classify_event_type(title: str) -> str:
    t = title.lower()
    if "sotw" in t or "skill" in t:
        return "skilling"
    if "botw" in t or "boss" in t:
        return "bossing"
    if "raid" in t:
        return "raids"
    return "other"


def describe_metric(metric: str) -> str:
    return f"WOM Competition: {metric.replace('_', ' ')}"


# ---------------------------------------------------------------------------
# DB apply layer
# ---------------------------------------------------------------------------

def upsert_event(
    conn: psycopg.Connection,
    summary: CompetitionSummary,
    now: datetime,
) -> EventRecord:
    status = compute_lifecycle_status(now, summary.starts_at, summary.ends_at)
    row = conn.execute(
        f"""
        INSERT INTO event
          (external_id, title, metric, event_type, description,
           starts_at, ends_at, lifecycle_status)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (external_id) DO UPDATE SET
          title = EXCLUDED.title,
          metric = EXCLUDED.metric,
          event_type = EXCLUDED.event_type,
          description = EXCLUDED.description,
          starts_at = EXCLUDED.starts_at,
          ends_at = EXCLUDED.ends_at,
          lifecycle_status = EXCLUDED.lifecycle_status,
          updated_at = now()
        RETURNING {_EVENT_COLUMNS}, (xmax = 0) AS inserted
        """,
        (
            summary.external_id,
            summary.title,
            summary.metric,
            classify_event_type(summary.title),
            describe_metric(summary.metric),
            summary.starts_at,
            summary.ends_at,
            status,
        ),
    ).fetchone()
    return _row_to_record(row[:8], inserted=bool(row[8]))


def run_ingest(
    conn: psycopg.Connection,
    competitions: list[CompetitionSummary],
    now: datetime,
    counters: EventSyncCounters,
) -> list[EventRecord]:
    """Upsert every competition; return the stored rows in provider order."""
    records: list[EventRecord] = []
    for summary in competitions:
        try:
            with conn.transaction():
                record = upsert_event(conn, summary, now)
        except Exception as exc:
            counters.ingest_errors += 1
            counters.warnings.append(f"upsert failed competition={summary.external_id}: {exc}")
            log.error("Error upserting competition %s: %s", summary.external_id, exc)
            continue

        if record.inserted:
            counters.events_inserted += 1
        else:
            counters.events_updated += 1
        records.append(record)
    return records


# ---------------------------------------------------------------------------
# Winner cache
# ---------------------------------------------------------------------------

def set_winner_if_missing(
    conn: psycopg.Connection,
    event_id: int,
    winner: str | None,
) -> bool:
    if not winner:
        return False
    cur = conn.execute(
        """
        UPDATE event SET winner_display_name = %s, updated_at = now()
        WHERE id = %s AND winner_display_name IS NULL
        """,
        (winner, event_id),
    )
    return cur.rowcount == 1


def backfill_winner(
    conn: psycopg.Connection,
    client: WomClient,
    event: EventRecord,
    counters: EventSyncCounters,
) -> None:
    """Cache the winner of a completed event that never got one (e.g. too old)."""
    try:
        detail = client.get_competition_detail(event.external_id)
    except ProviderError as exc:
        counters.warnings.append(f"winner fetch failed competition={event.external_id}: {exc}")
        log.warning("Could not fetch winner for competition %s: %s", event.external_id, exc)
        return

    winner = winner_name(compute_placements(detail.participations))
    try:
        with conn.transaction():
            stored = set_winner_if_missing(conn, event.id, winner)
    except psycopg.Error as exc:
        counters.warnings.append(f"winner update failed competition={event.external_id}: {exc}")
        log.error("Error caching winner for competition %s: %s", event.external_id, exc)
        return
    if stored:
        counters.winners_backfilled += 1
        event.winner_display_name = winner
        log.info("Winner for %r: %s", event.title, winner)
