"""siege_etl.sync_members

Clan roster sync from the provider group (--mode members).

  - Every group member gets one player-detail fetch, spaced by the
    RateLimiter.
  - New members (player id not yet in member): inserted with siege_score = 0.
    A failed fetch skips that member for this run; it is retried next run.
  - Existing members still in the group: username / role from the
    membership, display name and overall level / xp / ehb from the player
    detail, status active. A failed fetch still refreshes the membership
    fields and keeps the stored stats.
  - Members that left the group: status inactive. Rows and siege_score are
    never deleted or reset here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import psycopg

from siege_etl.provider_client import GroupMembership, PlayerDetail, RateLimiter, WomClient
from siege_etl.shared import ProviderError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class MemberSyncCounters:
    memberships_listed: int = 0
    members_inserted: int = 0
    members_refreshed: int = 0
    members_deactivated: int = 0
    player_fetch_errors: int = 0
    db_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# DB helpers
# ---------------------------------------------------------------------------

def _existing_member_ids(conn: psycopg.Connection) -> set[int]:
    rows = conn.execute("SELECT member_id FROM member").fetchall()
    return {int(r[0]) for r in rows}


def insert_member(
    conn: psycopg.Connection,
    membership: GroupMembership,
    player: PlayerDetail,
) -> None:
    conn.execute(
        """
        INSERT INTO member
          (member_id, username, display_name, role, status, siege_score,
           overall_level, overall_xp, ehb, joined_at)
        VALUES (%s, %s, %s, %s, 'active', 0, %s, %s, %s, COALESCE(%s, now()))
        ON CONFLICT (member_id) DO NOTHING
        """,
        (
            membership.player_id,
            membership.username,
            player.display_name or membership.display_name or membership.username,
            membership.role,
            player.overall_level,
            player.overall_xp,
            player.ehb,
            player.registered_at,
        ),
    )


def refresh_member(
    conn: psycopg.Connection,
    membership: GroupMembership,
    player: PlayerDetail | None,
) -> None:
    """Refresh identity and role from the membership; stats only when a player detail is at hand."""
    conn.execute(
        """
        UPDATE member SET
          username = %s,
          display_name = COALESCE(%s, %s, display_name),
          role = %s,
          status = 'active',
          overall_level = COALESCE(%s, overall_level),
          overall_xp = COALESCE(%s, overall_xp),
          ehb = COALESCE(%s, ehb),
          updated_at = now()
        WHERE member_id = %s
        """,
        (
            membership.username,
            player.display_name if player else None,
            membership.display_name,
            membership.role,
            player.overall_level if player else None,
            player.overall_xp if player else None,
            player.ehb if player else None,
            membership.player_id,
        ),
    )


def deactivate_missing(conn: psycopg.Connection, current_ids: set[int]) -> int:
    cur = conn.execute(
        """
        UPDATE member SET status = 'inactive', updated_at = now()
        WHERE status = 'active' AND NOT (member_id = ANY(%s))
        """,
        (sorted(current_ids),),
    )
    return cur.rowcount


# ---------------------------------------------------------------------------
# Top-level run function
# ---------------------------------------------------------------------------

def run_member_sync(
    conn: psycopg.Connection,
    client: WomClient,
    group_id: int,
    rate_limiter: RateLimiter,
    counters: MemberSyncCounters,
) -> None:
    """Raises ProviderError if the group membership list cannot be fetched."""
    memberships = client.get_group_memberships(group_id)
    counters.memberships_listed = len(memberships)
    log.info("Found %d members in WOM group", len(memberships))

    existing = _existing_member_ids(conn)
    log.info(
        "Found %d new members to add",
        sum(1 for m in memberships if m.player_id not in existing),
    )

    for idx, membership in enumerate(memberships):
        is_new = membership.player_id not in existing
        if idx > 0:
            rate_limiter.sleep()
        try:
            player: PlayerDetail | None = client.get_player(membership.username)
        except ProviderError as exc:
            counters.player_fetch_errors += 1
            counters.warnings.append(f"player fetch failed {membership.username}: {exc}")
            log.error("Error fetching player %s: %s", membership.username, exc)
            if is_new:
                continue
            player = None

        try:
            with conn.transaction():
                if is_new:
                    insert_member(conn, membership, player)
                else:
                    refresh_member(conn, membership, player)
        except Exception as exc:
            counters.db_errors += 1
            counters.warnings.append(f"member write failed {membership.username}: {exc}")
            log.error("Error saving member %s: %s", membership.username, exc)
            continue

        if is_new:
            counters.members_inserted += 1
            log.info("Added new member %s", membership.username)
        else:
            counters.members_refreshed += 1

    current_ids = {m.player_id for m in memberships}
    with conn.transaction():
        counters.members_deactivated = deactivate_missing(conn, current_ids)


def build_member_sync_report(counters: MemberSyncCounters, dry_run: bool) -> str:
    lines = [
        "=== Member Sync Run Report ===",
        f"dry_run             : {dry_run}",
        f"memberships_listed  : {counters.memberships_listed}",
        f"members_inserted    : {counters.members_inserted}",
        f"members_refreshed   : {counters.members_refreshed}",
        f"members_deactivated : {counters.members_deactivated}",
        f"player_fetch_errors : {counters.player_fetch_errors}",
        f"db_errors           : {counters.db_errors}",
    ]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)
