"""siege_etl.sync_cli

CLI entrypoint for the siege score sync.

Modes (--mode):
  events   - sync group competitions and award siege points (default)
  members  - sync the clan roster from the group memberships
  all      - members first, then events (new members can score immediately)

Usage:
    WOM_API_KEY=... python -m siege_etl.sync_cli \\
        --mode all \\
        --db-dsn "$SIEGE_DB_DSN" \\
        --group-id 1234

The API key is read from the env var named by --api-key-env, never from a
CLI argument. --dry-run runs everything inside one transaction that is
rolled back at the end; leases taken during a dry run are rolled back too.
"""

from __future__ import annotations

import contextlib
import logging
import os
import sys
import uuid
from datetime import datetime, timezone

import click
import psycopg

from siege_etl.provider_client import WOM_API_BASE, RateLimiter, WomClient
from siege_etl.shared import EventSyncCounters, ProviderError, write_run_report
from siege_etl.sync_events import build_event_sync_report, run_event_sync
from siege_etl.sync_members import (
    MemberSyncCounters,
    build_member_sync_report,
    run_member_sync,
)

log = logging.getLogger(__name__)


def _event_run_failed(counters: EventSyncCounters) -> bool:
    return counters.competitions_failed > 0 or counters.ingest_errors > 0


def _member_run_failed(counters: MemberSyncCounters) -> bool:
    return counters.db_errors > 0


@click.command()
@click.option(
    "--mode",
    type=click.Choice(["events", "members", "all"]),
    default="events",
    show_default=True,
)
@click.option("--db-dsn", required=True, envvar="SIEGE_DB_DSN", help="PostgreSQL DSN")
@click.option("--group-id", required=True, type=int, envvar="WOM_GROUP_ID", help="WOM group id")
@click.option("--api-key-env", default="WOM_API_KEY", show_default=True, help="Env var name holding the WOM API key")
@click.option("--api-base", default=WOM_API_BASE, show_default=True, help="WOM API base URL")
@click.option("--request-delay-seconds", default=1.5, type=float, show_default=True, help="Base delay between provider requests in seconds")
@click.option("--request-jitter-seconds", default=0.5, type=float, show_default=True, help="Random ±jitter added to each delay")
@click.option("--max-consecutive-failures", default=5, type=int, show_default=True, help="Stop retrying after this many consecutive provider failures")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    group_id: int,
    api_key_env: str,
    api_base: str,
    request_delay_seconds: float,
    request_jitter_seconds: float,
    max_consecutive_failures: int,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Siege score sync CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    api_key = os.environ.get(api_key_env, "")
    if not api_key:
        click.echo(f"[{run_id}] {api_key_env} not set; using unauthenticated WOM limits")

    rate_limiter = RateLimiter(
        base_delay=request_delay_seconds,
        jitter=request_jitter_seconds,
        max_consecutive_failures=max_consecutive_failures,
    )
    client = WomClient(base_url=api_base, api_key=api_key or None, rate_limiter=rate_limiter)

    member_counters = MemberSyncCounters()
    event_counters = EventSyncCounters()
    fatal: str | None = None

    try:
        conn = psycopg.connect(db_dsn, autocommit=True)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: cannot connect to database: {exc}", err=True)
        sys.exit(1)

    try:
        outer = conn.transaction(force_rollback=True) if dry_run else contextlib.nullcontext()
        with outer:
            if mode in ("members", "all"):
                try:
                    run_member_sync(conn, client, group_id, rate_limiter, member_counters)
                except ProviderError as exc:
                    fatal = f"member list fetch failed: {exc}"
                    log.error("Error syncing WOM members: %s", exc)
                click.echo(build_member_sync_report(member_counters, dry_run=dry_run))

            if mode in ("events", "all") and fatal is None:
                try:
                    run_event_sync(conn, client, group_id, event_counters)
                except ProviderError as exc:
                    fatal = f"competition list fetch failed: {exc}"
                    log.error("Error fetching WOM competitions: %s", exc)
                click.echo(build_event_sync_report(event_counters, dry_run=dry_run))
    finally:
        conn.close()

    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")

    counters: dict = {}
    if mode in ("members", "all"):
        counters["members"] = member_counters.to_dict()
    if mode in ("events", "all"):
        counters["events"] = event_counters.to_dict()
    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"group_id": group_id, "api_base": api_base, "fatal": fatal},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if fatal:
        click.echo(f"[{run_id}] FATAL: {fatal}", err=True)
        sys.exit(1)
    if _member_run_failed(member_counters) or _event_run_failed(event_counters):
        click.echo(
            f"[{run_id}] {event_counters.competitions_failed} competitions failed, "
            f"{event_counters.ingest_errors} ingest errors, "
            f"{member_counters.db_errors} member DB errors; exiting non-zero",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
