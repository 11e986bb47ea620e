"""siege_etl.provider_client

HTTP client for the Wise Old Man (WOM) v2 API: the competition provider.

Design principles:
  - Polite: exactly one in-flight request; retries wait on the RateLimiter
    (base delay, jitter, exponential backoff on 429/5xx).
  - Explicit schema: every payload is parsed into a dataclass before it
    leaves this module. Malformed competitions / participations are skipped
    and reported back to the caller, never passed on half-shaped.
  - Honest failures: transport errors and non-2xx answers raise
    ProviderError. A failed fetch is never reported as an empty result.
"""

from __future__ import annotations

import logging
import random
import time
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

import requests

from siege_etl.normalize import normalize_space, parse_instant, parse_progress, trim
from siege_etl.shared import MalformedRecordError, ProviderError

log = logging.getLogger(__name__)

WOM_API_BASE = "https://api.wiseoldman.net/v2"
USER_AGENT = "siege-etl/1.0 (clan siege score sync)"


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Polite single-thread rate limiter with jitter and exponential backoff."""

    base_delay: float = 1.5
    jitter: float = 0.5
    max_consecutive_failures: int = 5
    min_delay: float = 0.5
    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _backoff_mult: float = field(default=1.0, init=False, repr=False)

    def sleep(self) -> None:
        """Block for base_delay * backoff_mult ± jitter seconds (at least min_delay)."""
        delay = self.base_delay * self._backoff_mult
        delay += random.uniform(-self.jitter, self.jitter)
        time.sleep(max(self.min_delay, delay))

    def on_success(self) -> None:
        self._consecutive_failures = 0
        self._backoff_mult = 1.0

    def on_failure(self, reason: str = "") -> bool:
        """Record a failure. Returns True if the safe-stop threshold is reached."""
        self._consecutive_failures += 1
        self._backoff_mult = min(self._backoff_mult * 2.0, 32.0)
        log.debug("provider failure #%d (%s)", self._consecutive_failures, reason)
        return self._consecutive_failures >= self.max_consecutive_failures

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures


# ---------------------------------------------------------------------------
# Payload dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlayerIdentity:
    username: str
    display_name: str | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.username


@dataclass(frozen=True)
class CompetitionSummary:
    external_id: int
    title: str
    metric: str
    starts_at: datetime
    ends_at: datetime


@dataclass(frozen=True)
class Participation:
    identity: PlayerIdentity
    progress_gained: Decimal


@dataclass
class CompetitionDetail:
    external_id: int
    participations: list[Participation]
    rejected: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class GroupMembership:
    player_id: int
    username: str
    display_name: str | None
    role: str | None


@dataclass(frozen=True)
class PlayerDetail:
    player_id: int
    username: str
    display_name: str | None
    overall_level: int | None
    overall_xp: int | None
    ehb: int | None
    registered_at: datetime | None


# ---------------------------------------------------------------------------
# Parsers (staging layer)
# ---------------------------------------------------------------------------

def _require_int(raw: dict[str, Any], key: str) -> int:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRecordError(f"missing_or_invalid:{key}={value!r}")
    return value


def _require_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    v = normalize_space(value) if isinstance(value, str) else None
    if not v:
        raise MalformedRecordError(f"missing_or_invalid:{key}={value!r}")
    return v


def parse_player_identity(raw: Any) -> PlayerIdentity:
    if not isinstance(raw, dict):
        raise MalformedRecordError("missing_or_invalid:player")
    username = _require_str(raw, "username")
    display = raw.get("displayName")
    display_name = normalize_space(display) if isinstance(display, str) else None
    return PlayerIdentity(username=username, display_name=display_name)


def parse_competition_summary(raw: Any) -> CompetitionSummary:
    """Validate one element of /groups/{id}/competitions."""
    if not isinstance(raw, dict):
        raise MalformedRecordError(f"competition_not_an_object:{type(raw).__name__}")
    external_id = _require_int(raw, "id")
    title = _require_str(raw, "title")
    metric = _require_str(raw, "metric")
    starts_at = parse_instant(raw.get("startsAt"))
    ends_at = parse_instant(raw.get("endsAt"))
    if starts_at is None or ends_at is None:
        raise MalformedRecordError(
            f"invalid_instants:id={external_id} startsAt={raw.get('startsAt')!r} "
            f"endsAt={raw.get('endsAt')!r}"
        )
    if ends_at < starts_at:
        raise MalformedRecordError(f"ends_before_start:id={external_id}")
    return CompetitionSummary(
        external_id=external_id,
        title=title,
        metric=metric,
        starts_at=starts_at,
        ends_at=ends_at,
    )


def parse_participation(raw: Any) -> Participation:
    """Validate one element of a competition's participations list."""
    if not isinstance(raw, dict):
        raise MalformedRecordError("participation_not_an_object")
    identity = parse_player_identity(raw.get("player"))
    progress = raw.get("progress")
    gained = parse_progress(progress.get("gained")) if isinstance(progress, dict) else None
    if gained is None:
        raise MalformedRecordError(f"missing_or_invalid:progress.gained player={identity.username!r}")
    return Participation(identity=identity, progress_gained=gained)


def parse_competition_detail(external_id: int, raw: Any) -> CompetitionDetail:
    if not isinstance(raw, dict):
        raise MalformedRecordError(f"competition_detail_not_an_object:id={external_id}")
    items = raw.get("participations")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise MalformedRecordError(f"participations_not_a_list:id={external_id}")
    detail = CompetitionDetail(external_id=external_id, participations=[])
    for item in items:
        try:
            detail.participations.append(parse_participation(item))
        except MalformedRecordError as exc:
            detail.rejected.append(str(exc))
    return detail


def parse_group_membership(raw: Any) -> GroupMembership:
    if not isinstance(raw, dict):
        raise MalformedRecordError("membership_not_an_object")
    identity = parse_player_identity(raw.get("player"))
    role = raw.get("role")
    return GroupMembership(
        player_id=_require_int(raw, "playerId"),
        username=identity.username,
        display_name=identity.display_name,
        role=trim(role) if isinstance(role, str) else None,
    )


def _nested(raw: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(raw, dict):
            return None
        raw = raw.get(key)
    return raw


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(round(value))


def parse_player_detail(raw: Any) -> PlayerDetail:
    if not isinstance(raw, dict):
        raise MalformedRecordError("player_not_an_object")
    identity = parse_player_identity(raw)
    snapshot = _nested(raw, "latestSnapshot", "data")
    return PlayerDetail(
        player_id=_require_int(raw, "id"),
        username=identity.username,
        display_name=identity.display_name,
        overall_level=_as_int(_nested(snapshot, "skills", "overall", "level")),
        overall_xp=_as_int(_nested(snapshot, "skills", "overall", "experience")),
        ehb=_as_int(_nested(snapshot, "computed", "ehb", "value")),
        registered_at=parse_instant(raw.get("registeredAt")),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class WomClient:
    """Thin synchronous WOM client. One session, one request at a time."""

    def __init__(
        self,
        base_url: str = WOM_API_BASE,
        api_key: str | None = None,
        rate_limiter: RateLimiter | None = None,
        session: requests.Session | None = None,
        timeout: int = 30,
        max_attempts: int = 3,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._rate_limiter = rate_limiter or RateLimiter()
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT})
        if api_key:
            self._session.headers.update({"x-api-key": api_key})

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET base_url + path with backoff on 429/5xx. Raises ProviderError."""
        url = f"{self._base_url}{path}"
        last_error = "no attempt made"
        for attempt in range(self._max_attempts):
            if attempt > 0:
                self._rate_limiter.sleep()

            try:
                resp = self._session.get(url, params=params, timeout=self._timeout)
            except requests.RequestException as exc:
                last_error = f"network error: {exc}"
                log.warning("GET %s failed (attempt %d): %s", url, attempt + 1, exc)
                if self._rate_limiter.on_failure("transport"):
                    break
                continue

            if resp.status_code == 429 or resp.status_code >= 500:
                last_error = f"status {resp.status_code}"
                log.warning("GET %s returned %s (attempt %d)", url, resp.status_code, attempt + 1)
                if self._rate_limiter.on_failure(str(resp.status_code)):
                    break
                continue

            if resp.status_code != 200:
                raise ProviderError(
                    f"GET {url} returned status {resp.status_code}",
                    status_code=resp.status_code,
                )

            self._rate_limiter.on_success()
            try:
                return resp.json()
            except ValueError as exc:
                raise ProviderError(f"GET {url} returned invalid JSON: {exc}") from exc

        raise ProviderError(f"GET {url} gave up after retries ({last_error})")

    def list_competitions(self, group_id: int) -> tuple[list[CompetitionSummary], list[str]]:
        """Return (valid competitions in provider order, reject reasons)."""
        payload = self._get_json(f"/groups/{group_id}/competitions")
        if not isinstance(payload, list):
            raise ProviderError(f"competition list for group {group_id} is not a JSON array")
        summaries: list[CompetitionSummary] = []
        rejected: list[str] = []
        for raw in payload:
            try:
                summaries.append(parse_competition_summary(raw))
            except MalformedRecordError as exc:
                log.warning("Skipping malformed competition: %s", exc)
                rejected.append(str(exc))
        return summaries, rejected

    def get_competition_detail(self, competition_id: int) -> CompetitionDetail:
        payload = self._get_json(f"/competitions/{competition_id}")
        try:
            detail = parse_competition_detail(competition_id, payload)
        except MalformedRecordError as exc:
            raise ProviderError(str(exc)) from exc
        for reason in detail.rejected:
            log.warning("Competition %s: skipping malformed participation: %s", competition_id, reason)
        return detail

    def get_group_memberships(self, group_id: int) -> list[GroupMembership]:
        payload = self._get_json(f"/groups/{group_id}", params={"includeMemberships": "true"})
        items = payload.get("memberships") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise ProviderError(f"group {group_id} payload has no memberships array")
        memberships: list[GroupMembership] = []
        for raw in items:
            try:
                memberships.append(parse_group_membership(raw))
            except MalformedRecordError as exc:
                log.warning("Skipping malformed membership: %s", exc)
        return memberships

    def get_player(self, username: str) -> PlayerDetail:
        payload = self._get_json(f"/players/{urllib.parse.quote(username, safe='')}")
        try:
            return parse_player_detail(payload)
        except MalformedRecordError as exc:
            raise ProviderError(f"player {username!r}: {exc}") from exc
