"""siege_etl.placement

Placement calculator: progress deltas -> places -> siege points.

Rules:
  - progress_gained <= 0 means the player did not really take part; dropped.
  - Sorted by progress descending. The sort is stable, so participants with
    equal progress keep provider order (display only; they share a place).
  - Exactly-equal progress forms one placement group.
  - Places are dense: [100, 100, 80, 50] -> [1, 1, 2, 3].
  - Points: 1st 15, 2nd 10, 3rd 5, everyone else 2.

No I/O here.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from siege_etl.provider_client import Participation, PlayerIdentity

POINTS_BY_PLACE = {1: 15, 2: 10, 3: 5}
PARTICIPATION_POINTS = 2


@dataclass(frozen=True)
class Placement:
    identity: PlayerIdentity
    place: int
    points_awarded: int
    progress_gained: Decimal


@dataclass
class PlacementGroup:
    place: int
    progress_gained: Decimal
    participants: list[Participation]

    @property
    def points_awarded(self) -> int:
        return points_for_place(self.place)


def points_for_place(place: int) -> int:
    if place < 1:
        raise ValueError(f"place must be >= 1, got {place}")
    return POINTS_BY_PLACE.get(place, PARTICIPATION_POINTS)


def group_by_progress(participants: Iterable[Participation]) -> list[PlacementGroup]:
    """Drop non-participants, sort, and group exact ties into dense places."""
    valid = [p for p in participants if p.progress_gained > 0]
    valid.sort(key=lambda p: p.progress_gained, reverse=True)

    groups: list[PlacementGroup] = []
    for participant in valid:
        if groups and groups[-1].progress_gained == participant.progress_gained:
            groups[-1].participants.append(participant)
        else:
            groups.append(
                PlacementGroup(
                    place=len(groups) + 1,
                    progress_gained=participant.progress_gained,
                    participants=[participant],
                )
            )
    return groups


def compute_placements(participants: Iterable[Participation]) -> list[Placement]:
    return [
        Placement(
            identity=participant.identity,
            place=group.place,
            points_awarded=group.points_awarded,
            progress_gained=participant.progress_gained,
        )
        for group in group_by_progress(participants)
        for participant in group.participants
    ]


def winner_name(placements: list[Placement]) -> str | None:
    """Display name (or username) of the first participant in first place."""
    if not placements:
        return None
    return placements[0].identity.name
