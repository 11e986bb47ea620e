"""Integration tests for the siege-sync CLI.

Requires a real PostgreSQL database (via pytest-postgresql). The WOM client
is patched out; no live HTTP requests are made.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from siege_etl.provider_client import (
    CompetitionDetail,
    CompetitionSummary,
    GroupMembership,
    Participation,
    PlayerDetail,
    PlayerIdentity,
)
from siege_etl.shared import ProviderError
from siege_etl.sync_cli import main


def _score(conn, member_id: int) -> int | None:
    row = conn.execute("SELECT siege_score FROM member WHERE member_id = %s", (member_id,)).fetchone()
    return int(row[0]) if row else None


def _client_for(make_client, **overrides):
    ends_at = datetime.now(timezone.utc) - timedelta(days=2)
    defaults = dict(
        competitions=[
            CompetitionSummary(
                external_id=101,
                title="SOTW - Agility",
                metric="agility",
                starts_at=ends_at - timedelta(days=7),
                ends_at=ends_at,
            )
        ],
        details={
            101: CompetitionDetail(
                external_id=101,
                participations=[
                    Participation(PlayerIdentity("alice"), Decimal(900)),
                    Participation(PlayerIdentity("bob"), Decimal(400)),
                ],
            )
        },
        memberships=[
            GroupMembership(player_id=1, username="alice", display_name="Alice", role="member"),
            GroupMembership(player_id=2, username="bob", display_name="Bob", role="member"),
        ],
        players={
            "alice": PlayerDetail(
                player_id=1, username="alice", display_name="Alice",
                overall_level=2000, overall_xp=None, ehb=None, registered_at=None,
            ),
            "bob": PlayerDetail(
                player_id=2, username="bob", display_name="Bob",
                overall_level=None, overall_xp=None, ehb=None, registered_at=None,
            ),
        },
    )
    defaults.update(overrides)
    return make_client(**defaults)


def _invoke(dsn, client, *extra):
    runner = CliRunner()
    with runner.isolated_filesystem():
        with patch("siege_etl.sync_cli.WomClient", return_value=client):
            result = runner.invoke(
                main,
                ["--db-dsn", dsn, "--group-id", "42", "--run-id", "test-run", *extra],
                env={"WOM_API_KEY": "k"},
            )
        report_path = Path("artifacts/reports/test-run.json")
        report = json.loads(report_path.read_text()) if report_path.exists() else None
    return result, report


class TestSyncCli:
    def test_all_mode_syncs_members_then_awards(self, db_conn, make_client):
        conn, dsn = db_conn
        conn.execute("INSERT INTO member (member_id, username) VALUES (1, 'alice')")
        client = _client_for(make_client)

        result, report = _invoke(dsn, client, "--mode", "all")

        assert result.exit_code == 0, result.output
        assert _score(conn, 1) == 15
        assert _score(conn, 2) == 10
        assert report["mode"] == "all"
        assert report["counters"]["events"]["competitions_awarded"] == 1
        assert report["counters"]["members"]["members_inserted"] == 1

    def test_dry_run_rolls_back(self, db_conn, make_client):
        conn, dsn = db_conn
        conn.execute("INSERT INTO member (member_id, username) VALUES (1, 'alice'), (2, 'bob')")
        client = _client_for(make_client)

        result, report = _invoke(dsn, client, "--mode", "events", "--dry-run")

        assert result.exit_code == 0, result.output
        assert "rolled back" in result.output
        assert report["dry_run"] is True
        assert report["counters"]["events"]["competitions_awarded"] == 1
        assert _score(conn, 1) == 0
        assert conn.execute("SELECT count(*) FROM event").fetchone()[0] == 0

    def test_listing_failure_exits_non_zero(self, db_conn, make_client):
        _, dsn = db_conn
        client = _client_for(make_client, list_error=ProviderError("status 503", status_code=503))

        result, report = _invoke(dsn, client)

        assert result.exit_code == 1
        assert "competition list fetch failed" in report["fatal"]

    def test_failed_competition_exits_non_zero(self, db_conn, make_client):
        conn, dsn = db_conn
        conn.execute("INSERT INTO member (member_id, username) VALUES (1, 'alice')")
        client = _client_for(make_client, details={101: ProviderError("status 500", status_code=500)})

        result, report = _invoke(dsn, client)

        assert result.exit_code == 1
        assert report["counters"]["events"]["competitions_failed"] == 1
        assert conn.execute("SELECT points_processed FROM event").fetchone()[0] is False

    @pytest.mark.parametrize("missing", ["--db-dsn", "--group-id"])
    def test_required_options(self, missing):
        args = {"--db-dsn": "dbname=x", "--group-id": "42"}
        args.pop(missing)
        flat = [item for pair in args.items() for item in pair]
        result = CliRunner().invoke(main, flat, env={"SIEGE_DB_DSN": None, "WOM_GROUP_ID": None})
        assert result.exit_code == 2
