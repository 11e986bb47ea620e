"""siege_etl.award_points

Points award transactor: placements -> member score increments + result rows.

All-or-nothing:
  - Every siege_score increment, every event_result insert, the winner cache
    and the points_processed flag are written inside ONE transaction block.
    Partial awards for a competition cannot be committed.
  - event_result is keyed (event_id, member_id) and inserted without
    ON CONFLICT. If the lease ever failed to keep a second worker out, the
    duplicate insert raises and that worker's whole award rolls back.
  - On any failure the lease is released, points_processed stays false and
    AwardTransactionError is raised so the next run retries.

Member resolution (per participant, outside the transaction):
  username (case-insensitive) -> display name -> skipped with a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import psycopg

from siege_etl.completion_lock import mark_processed, release_lease
from siege_etl.ingest_events import set_winner_if_missing
from siege_etl.normalize import normalize_username
from siege_etl.placement import Placement
from siege_etl.provider_client import PlayerIdentity
from siege_etl.shared import (
    AwardTransactionError,
    EventSyncCounters,
    resolve_member_by_display_name,
    resolve_member_by_username,
)

log = logging.getLogger(__name__)


class LeaseLostError(Exception):
    """The event's lease no longer carries our value at commit time."""


@dataclass(frozen=True)
class MemberAward:
    member_id: int
    player_name: str
    placement: int
    points_awarded: int
    progress_gained: Decimal


# ---------------------------------------------------------------------------
# Member resolution
# ---------------------------------------------------------------------------

def resolve_member(conn: psycopg.Connection, identity: PlayerIdentity) -> int | None:
    username = normalize_username(identity.username)
    if username:
        member_id = resolve_member_by_username(conn, username)
        if member_id is not None:
            return member_id

    display = normalize_username(identity.display_name)
    if display and display != username:
        member_id = resolve_member_by_display_name(conn, display)
        if member_id is not None:
            log.info("Found member via display name: %s", display)
            return member_id
    return None


def build_awards(
    conn: psycopg.Connection,
    placements: list[Placement],
    counters: EventSyncCounters,
) -> list[MemberAward]:
    """Resolve every placement to a member. Unresolvable players are skipped.

    If two provider identities resolve to the same member, only the first
    (best-placed) one is kept.
    """
    awards: list[MemberAward] = []
    seen: set[int] = set()
    for placement in placements:
        identity = placement.identity
        member_id = resolve_member(conn, identity)
        if member_id is None:
            counters.unresolved_members += 1
            counters.warnings.append(f"member not found: {identity.username}")
            log.warning(
                "Member not found by username or display name: %s (%s)",
                identity.username, identity.display_name,
            )
            continue
        if member_id in seen:
            counters.warnings.append(
                f"duplicate resolution: {identity.username} -> member {member_id}"
            )
            continue
        seen.add(member_id)
        awards.append(
            MemberAward(
                member_id=member_id,
                player_name=identity.username,
                placement=placement.place,
                points_awarded=placement.points_awarded,
                progress_gained=placement.progress_gained,
            )
        )
    return awards


# ---------------------------------------------------------------------------
# Atomic apply
# ---------------------------------------------------------------------------

def _apply_award_rows(
    conn: psycopg.Connection,
    event_id: int,
    award: MemberAward,
) -> None:
    cur = conn.execute(
        """
        UPDATE member SET siege_score = siege_score + %s, updated_at = now()
        WHERE member_id = %s
        """,
        (award.points_awarded, award.member_id),
    )
    if cur.rowcount != 1:
        raise LookupError(f"member {award.member_id} disappeared before award")
    conn.execute(
        """
        INSERT INTO event_result
          (event_id, member_id, player_name, placement, points_awarded, progress_gained)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (event_id, award.member_id, award.player_name, award.placement,
         award.points_awarded, award.progress_gained),
    )


def apply_awards(
    conn: psycopg.Connection,
    event_id: int,
    external_id: int,
    lease: datetime,
    awards: list[MemberAward],
    winner: str | None,
) -> None:
    """Commit all awards for one competition, or none of them."""
    try:
        with conn.transaction():
            for award in awards:
                _apply_award_rows(conn, event_id, award)
            set_winner_if_missing(conn, event_id, winner)
            if not mark_processed(conn, event_id, lease):
                raise LeaseLostError(f"lease on event {event_id} lost before commit")
    except (psycopg.Error, LookupError, LeaseLostError) as exc:
        log.error("Transaction error for competition %s: %s", external_id, exc)
        try:
            release_lease(conn, event_id, lease)
        except psycopg.Error as release_exc:
            log.error(
                "Could not release lease on competition %s (expires on its own): %s",
                external_id, release_exc,
            )
        raise AwardTransactionError(external_id, exc) from exc

    for award in awards:
        log.info(
            "Awarded %d points to member %s (place %d)",
            award.points_awarded, award.member_id, award.placement,
        )
