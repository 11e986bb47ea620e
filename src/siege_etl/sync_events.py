"""siege_etl.sync_events

Competition sync + siege points award pipeline (--mode events).

Processing order per run:
  1.  List the group's competitions from the provider.
      A failed listing aborts the run before anything is written.
  2.  Upsert every competition into event (per-competition transaction).
  3.  For each completed event, in provider order:
      a.  points_processed already set          -> skipped_processed
      b.  ended more than a month ago            -> closed as too_old
      c.  acquire lease (CAS)                    -> skipped_locked if held
      d.  fetch participations                   -> release lease on error
      e.  placements                             -> closed as no_participants if empty
      f.  resolve members                        -> closed as no_members_resolved if none
      g.  atomic award                           -> awarded / failed (lease released)
  4.  Cache winners for events closed as too_old in this run.

One competition's failure never stops the others. Nothing in this module
marks an event processed unless its award committed or it was closed with an
explicit skipped_reason.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import psycopg

from siege_etl.award_points import apply_awards, build_awards
from siege_etl.completion_lock import (
    SKIPPED_NO_MEMBERS,
    SKIPPED_NO_PARTICIPANTS,
    acquire_lease,
    is_eligible,
    is_too_old,
    mark_processed,
    mark_too_old,
    release_lease,
)
from siege_etl.ingest_events import (
    COMPLETED,
    EventRecord,
    backfill_winner,
    run_ingest,
    set_winner_if_missing,
)
from siege_etl.placement import compute_placements, winner_name
from siege_etl.provider_client import WomClient
from siege_etl.shared import AwardTransactionError, EventSyncCounters, ProviderError

log = logging.getLogger(__name__)

OUTCOME_AWARDED = "awarded"
OUTCOME_LOCKED = "skipped_locked"
OUTCOME_FAILED = "failed"
OUTCOME_NO_PARTICIPANTS = SKIPPED_NO_PARTICIPANTS
OUTCOME_NO_MEMBERS = SKIPPED_NO_MEMBERS


# ---------------------------------------------------------------------------
# Per-competition processing
# ---------------------------------------------------------------------------

def _close_without_awards(
    conn: psycopg.Connection,
    event: EventRecord,
    lease: datetime,
    reason: str,
    winner: str | None,
) -> None:
    with conn.transaction():
        set_winner_if_missing(conn, event.id, winner)
        closed = mark_processed(conn, event.id, lease, skipped_reason=reason)
    if closed:
        event.points_processed = True
        event.winner_display_name = event.winner_display_name or winner
    else:
        log.warning("Competition %s: lease lost before closing (%s)", event.external_id, reason)


def _release_after_error(conn: psycopg.Connection, event: EventRecord, lease: datetime) -> None:
    try:
        release_lease(conn, event.id, lease)
    except psycopg.Error as exc:
        log.error(
            "Could not release lease on competition %s (expires on its own): %s",
            event.external_id, exc,
        )


def process_competition(
    conn: psycopg.Connection,
    client: WomClient,
    event: EventRecord,
    counters: EventSyncCounters,
) -> str:
    """Award points for one completed, unprocessed event. Returns the outcome.

    Any failure is counted against this competition only; the lease is
    released so a later run retries it.
    """
    try:
        lease = acquire_lease(conn, event.id)
    except psycopg.Error as exc:
        counters.competitions_failed += 1
        counters.warnings.append(f"lease acquire failed competition={event.external_id}: {exc}")
        log.error("Error acquiring lease on competition %s: %s", event.external_id, exc)
        return OUTCOME_FAILED
    if lease is None:
        counters.skipped_locked += 1
        log.info(
            "Competition %s is being processed elsewhere or was just processed. Skipping.",
            event.external_id,
        )
        return OUTCOME_LOCKED

    try:
        detail = client.get_competition_detail(event.external_id)
    except ProviderError as exc:
        _release_after_error(conn, event, lease)
        counters.competitions_failed += 1
        counters.warnings.append(f"detail fetch failed competition={event.external_id}: {exc}")
        log.error("Failed to fetch competition %s details: %s", event.external_id, exc)
        return OUTCOME_FAILED

    try:
        placements = compute_placements(detail.participations)
        if not placements:
            log.info("No participants found for competition %s", event.external_id)
            _close_without_awards(conn, event, lease, SKIPPED_NO_PARTICIPANTS, None)
            counters.closed_no_participants += 1
            return OUTCOME_NO_PARTICIPANTS

        winner = winner_name(placements)
        awards = build_awards(conn, placements, counters)
        if not awards:
            log.info("No valid members to award points to in competition %s", event.external_id)
            _close_without_awards(conn, event, lease, SKIPPED_NO_MEMBERS, winner)
            counters.closed_no_members += 1
            return OUTCOME_NO_MEMBERS
    except Exception as exc:
        _release_after_error(conn, event, lease)
        counters.competitions_failed += 1
        counters.warnings.append(f"processing failed competition={event.external_id}: {exc}")
        log.error("Error processing competition %s: %s", event.external_id, exc)
        return OUTCOME_FAILED

    log.info(
        "Executing transaction for %d member point awards in competition %s",
        len(awards), event.external_id,
    )
    try:
        apply_awards(conn, event.id, event.external_id, lease, awards, winner)
    except AwardTransactionError as exc:
        counters.competitions_failed += 1
        counters.warnings.append(str(exc))
        return OUTCOME_FAILED

    event.points_processed = True
    event.winner_display_name = event.winner_display_name or winner
    counters.competitions_awarded += 1
    counters.results_inserted += len(awards)
    counters.points_awarded += sum(a.points_awarded for a in awards)
    return OUTCOME_AWARDED


# ---------------------------------------------------------------------------
# Top-level run function
# ---------------------------------------------------------------------------

def run_event_sync(
    conn: psycopg.Connection,
    client: WomClient,
    group_id: int,
    counters: EventSyncCounters,
    now: datetime | None = None,
    backfill_winners: bool = True,
) -> list[EventRecord]:
    """End-to-end competition sync for one group. Returns the ingested events.

    Raises ProviderError if the competition list cannot be fetched.
    """
    now = now or datetime.now(timezone.utc)

    competitions, rejected = client.list_competitions(group_id)
    counters.competitions_listed += len(competitions) + len(rejected)
    counters.competitions_rejected += len(rejected)
    counters.warnings.extend(f"malformed competition: {r}" for r in rejected)
    log.info("Found %d competitions (%d malformed)", len(competitions), len(rejected))

    events = run_ingest(conn, competitions, now, counters)

    closed_too_old: list[EventRecord] = []
    for event in events:
        if event.lifecycle_status != COMPLETED:
            continue
        counters.completed_seen += 1

        if not is_eligible(event):
            counters.skipped_processed += 1
            log.debug("Skipping points for competition %s - already processed", event.external_id)
            continue

        if is_too_old(event.ends_at, now):
            try:
                closed = mark_too_old(conn, event.id)
            except psycopg.Error as exc:
                counters.competitions_failed += 1
                counters.warnings.append(f"too-old close failed competition={event.external_id}: {exc}")
                log.error("Error closing competition %s as too old: %s", event.external_id, exc)
                continue
            if closed:
                event.points_processed = True
                counters.skipped_old += 1
                closed_too_old.append(event)
                log.info(
                    "Skipping points for competition %s - over one month old (ended %s)",
                    event.external_id, event.ends_at.isoformat(),
                )
            else:
                counters.skipped_locked += 1
            continue

        log.info("Processing points for competition %s", event.external_id)
        process_competition(conn, client, event, counters)

    if backfill_winners:
        for event in closed_too_old:
            if event.winner_display_name is None:
                backfill_winner(conn, client, event, counters)

    return events


def build_event_sync_report(counters: EventSyncCounters, dry_run: bool) -> str:
    lines = [
        "=== Competition Sync Run Report ===",
        f"dry_run              : {dry_run}",
        "",
        "--- Ingestion ---",
        f"competitions_listed  : {counters.competitions_listed}",
        f"competitions_rejected: {counters.competitions_rejected}",
        f"events_inserted      : {counters.events_inserted}",
        f"events_updated       : {counters.events_updated}",
        f"ingest_errors        : {counters.ingest_errors}",
        "",
        "--- Points ---",
        f"completed_seen       : {counters.completed_seen}",
        f"awarded              : {counters.competitions_awarded}",
        f"skipped(processed)   : {counters.skipped_processed}",
        f"skipped(too old)     : {counters.skipped_old}",
        f"skipped(locked)      : {counters.skipped_locked}",
        f"closed(no particip.) : {counters.closed_no_participants}",
        f"closed(no members)   : {counters.closed_no_members}",
        f"failed               : {counters.competitions_failed}",
        f"results_inserted     : {counters.results_inserted}",
        f"points_awarded       : {counters.points_awarded}",
        f"unresolved_members   : {counters.unresolved_members}",
        f"winners_backfilled   : {counters.winners_backfilled}",
    ]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)
