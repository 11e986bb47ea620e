"""Integration test fixtures.

Applies migrations 0001-0003 against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test runs.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_members.sql",
    PROJECT_ROOT / "migrations" / "0002_events.sql",
    PROJECT_ROOT / "migrations" / "0003_event_results.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (autocommit connection with schema applied, dsn).

    The sync code opens its own transaction blocks, so the connection stays
    in autocommit mode like the CLI's.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Provider stand-in
# ---------------------------------------------------------------------------

class FakeWomClient:
    """In-memory WomClient: competition list, details and roster from dicts.

    A detail or player value that is an Exception instance is raised instead
    of returned. Every call is recorded in .calls.
    """

    def __init__(
        self,
        competitions=None,
        details=None,
        rejected=None,
        memberships=None,
        players=None,
        list_error=None,
    ):
        self.competitions = list(competitions or [])
        self.details = dict(details or {})
        self.rejected = list(rejected or [])
        self.memberships = list(memberships or [])
        self.players = dict(players or {})
        self.list_error = list_error
        self.calls: list[tuple] = []

    def list_competitions(self, group_id):
        self.calls.append(("list_competitions", group_id))
        if self.list_error is not None:
            raise self.list_error
        return list(self.competitions), list(self.rejected)

    def get_competition_detail(self, competition_id):
        self.calls.append(("get_competition_detail", competition_id))
        detail = self.details[competition_id]
        if isinstance(detail, Exception):
            raise detail
        return detail

    def get_group_memberships(self, group_id):
        self.calls.append(("get_group_memberships", group_id))
        if self.list_error is not None:
            raise self.list_error
        return list(self.memberships)

    def get_player(self, username):
        self.calls.append(("get_player", username))
        player = self.players[username]
        if isinstance(player, Exception):
            raise player
        return player

    def detail_fetches(self, competition_id) -> int:
        return self.calls.count(("get_competition_detail", competition_id))


@pytest.fixture()
def make_client():
    return FakeWomClient
