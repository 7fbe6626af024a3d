"""Classify every campaign marker as locked, unlocked or completed.

Recomputed from scratch on each poll: one reachability pass plus one distance
per marker, no I/O and no state carried between calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from .geo import DEFAULT_UNLOCK_RADIUS_M, LatLng, distance_m
from .graph import MarkerSpec, ProgressionGraph

STATUS_LOCKED = "locked"
STATUS_UNLOCKED = "unlocked"
STATUS_COMPLETED = "completed"

REASON_TOO_FAR = "too_far"
REASON_SEQUENCE = "sequence"


@dataclass(frozen=True)
class MarkerState:
    marker_id: str
    route_id: str
    status: str
    distance_m: float
    reachable: bool
    in_range: bool

    @property
    def locked_reason(self) -> Optional[str]:
        if self.status != STATUS_LOCKED:
            return None
        return REASON_SEQUENCE if not self.reachable else REASON_TOO_FAR

    def to_dict(self) -> dict:
        return {
            "marker_id": self.marker_id,
            "route_id": self.route_id,
            "status": self.status,
            "distance_m": round(self.distance_m, 1),
            "reachable": self.reachable,
            "in_range": self.in_range,
            "locked_reason": self.locked_reason,
        }


@dataclass(frozen=True)
class UnlockSnapshot:
    markers: List[MarkerState]
    radius_m: float
    next_marker_id: Optional[str] = None
    next_hint: Optional[str] = None

    def state_for(self, marker_id: str) -> Optional[MarkerState]:
        for state in self.markers:
            if state.marker_id == marker_id:
                return state
        return None

    def to_dict(self) -> dict:
        next_state = self.state_for(self.next_marker_id) if self.next_marker_id else None
        return {
            "radius_m": self.radius_m,
            "markers": [state.to_dict() for state in self.markers],
            "next_marker": (
                {
                    **next_state.to_dict(),
                    "hint": self.next_hint,
                }
                if next_state
                else None
            ),
        }


def resolve(
    user_location: LatLng,
    graph: ProgressionGraph,
    completed_marker_ids: Iterable[str],
    radius_m: Optional[float] = None,
) -> UnlockSnapshot:
    if radius_m is None:
        radius_m = graph.unlock_radius_m if graph.unlock_radius_m is not None else DEFAULT_UNLOCK_RADIUS_M
    completed = set(completed_marker_ids)
    frontier = graph.first_incomplete_position(completed)

    states: List[MarkerState] = []
    for position, marker in enumerate(graph.markers):
        states.append(_classify(marker, position, frontier, completed, user_location, radius_m))

    next_marker: Optional[MarkerSpec] = graph.next_marker(completed)
    return UnlockSnapshot(
        markers=states,
        radius_m=radius_m,
        next_marker_id=next_marker.id if next_marker else None,
        next_hint=graph.hint_for_marker(next_marker.id, completed) if next_marker else None,
    )


def _classify(
    marker: MarkerSpec,
    position: int,
    frontier: int,
    completed: set,
    user_location: LatLng,
    radius_m: float,
) -> MarkerState:
    distance = distance_m(user_location, marker.position)
    in_range = distance <= radius_m
    # Same rule as ProgressionGraph.is_marker_reachable, with the frontier hoisted out of the loop.
    reachable = position <= frontier
    if marker.id in completed:
        status = STATUS_COMPLETED
    elif reachable and in_range:
        status = STATUS_UNLOCKED
    else:
        status = STATUS_LOCKED
    return MarkerState(
        marker_id=marker.id,
        route_id=marker.route_id,
        status=status,
        distance_m=distance,
        reachable=reachable,
        in_range=in_range,
    )
