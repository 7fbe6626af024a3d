"""In-memory campaign graph: ordered routes, their markers, and marker questions.

The graph is built once per campaign by the storage layer and is read-only
afterwards. Traversal is strictly sequential: a marker is reachable only
when every marker before it (earlier in its own route, and every marker of
every earlier route) has been completed.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .geo import LatLng

TRUE_FALSE_ANSWERS = {"true", "false"}


@dataclass(frozen=True)
class QuestionSpec:
    kind: ClassVar[str] = ""

    id: str
    marker_id: str
    order_index: int
    prompt: str
    correct_answer: str
    points: int = 10

    def validate(self) -> None:
        if not (self.correct_answer or "").strip():
            raise ValueError(f"question {self.id} has no correct answer")
        if not isinstance(self.points, int) or isinstance(self.points, bool) or self.points <= 0:
            raise ValueError(f"question {self.id} must award a positive whole number of points")

    def to_public_dict(self) -> dict:
        """Serialize without the canonical answer."""
        return {
            "id": self.id,
            "marker_id": self.marker_id,
            "order_index": self.order_index,
            "type": self.kind,
            "prompt": self.prompt,
            "points": self.points,
        }


@dataclass(frozen=True)
class MultipleChoiceQuestion(QuestionSpec):
    kind: ClassVar[str] = "multiple_choice"

    options: Tuple[str, ...] = ()

    def validate(self) -> None:
        super().validate()
        if not self.options or not all(isinstance(option, str) for option in self.options):
            raise ValueError(f"question {self.id} needs a list of text options")
        normalized = {option.strip().lower() for option in self.options}
        if self.correct_answer.strip().lower() not in normalized:
            raise ValueError(f"question {self.id} correct answer is not one of its options")

    def to_public_dict(self) -> dict:
        payload = super().to_public_dict()
        payload["options"] = list(self.options)
        return payload


@dataclass(frozen=True)
class TrueFalseQuestion(QuestionSpec):
    kind: ClassVar[str] = "true_false"

    def validate(self) -> None:
        super().validate()
        if self.correct_answer.strip().lower() not in TRUE_FALSE_ANSWERS:
            raise ValueError(f"question {self.id} must be answered true or false")

    def to_public_dict(self) -> dict:
        payload = super().to_public_dict()
        payload["options"] = ["True", "False"]
        return payload


@dataclass(frozen=True)
class TextInputQuestion(QuestionSpec):
    kind: ClassVar[str] = "text_input"


QUESTION_KINDS = {
    cls.kind: cls for cls in (MultipleChoiceQuestion, TrueFalseQuestion, TextInputQuestion)
}


def build_question(kind: str, **fields) -> QuestionSpec:
    """Build and validate the question variant for ``kind``; raises ValueError."""
    cls = QUESTION_KINDS.get((kind or "").strip().lower())
    if cls is None:
        raise ValueError(f"unknown question type {kind!r}")
    if cls is MultipleChoiceQuestion:
        fields["options"] = tuple(fields.get("options") or ())
    else:
        fields.pop("options", None)
    question = cls(**fields)
    question.validate()
    return question


@dataclass(frozen=True)
class MarkerSpec:
    id: str
    route_id: str
    order_index: int
    position: LatLng
    name: str = ""
    description: str = ""
    hint_to_next: Optional[str] = None
    location_kind: str = "waypoint"
    location_id: Optional[str] = None
    category: Optional[str] = None
    questions: Tuple[QuestionSpec, ...] = ()


@dataclass(frozen=True)
class RouteSpec:
    id: str
    order_index: int
    starting_hint: Optional[str] = None
    name: str = ""
    markers: Tuple[MarkerSpec, ...] = field(default_factory=tuple)


class ProgressionGraph:
    def __init__(
        self,
        campaign_id: str,
        routes: Iterable[RouteSpec],
        *,
        name: str = "",
        unlock_radius_m: Optional[float] = None,
    ):
        self.campaign_id = campaign_id
        self.name = name
        self.unlock_radius_m = unlock_radius_m
        self.routes: Tuple[RouteSpec, ...] = tuple(sorted(routes, key=lambda route: route.order_index))

        ordered: List[MarkerSpec] = []
        self._routes_by_id: Dict[str, RouteSpec] = {}
        self._route_markers: Dict[str, Tuple[MarkerSpec, ...]] = {}
        for route in self.routes:
            if route.id in self._routes_by_id:
                raise ValueError(f"route {route.id} appears twice")
            markers = tuple(sorted(route.markers, key=lambda marker: marker.order_index))
            indexes = [marker.order_index for marker in markers]
            if len(set(indexes)) != len(indexes):
                raise ValueError(f"route {route.id} has duplicate marker order indexes")
            self._routes_by_id[route.id] = route
            self._route_markers[route.id] = markers
            ordered.extend(markers)

        self.markers: Tuple[MarkerSpec, ...] = tuple(ordered)
        self._position: Dict[str, int] = {}
        self._markers_by_id: Dict[str, MarkerSpec] = {}
        self._questions_by_id: Dict[str, QuestionSpec] = {}
        for position, marker in enumerate(self.markers):
            if marker.id in self._markers_by_id:
                raise ValueError(f"marker {marker.id} appears twice")
            self._position[marker.id] = position
            self._markers_by_id[marker.id] = marker
            for question in marker.questions:
                self._questions_by_id[question.id] = question
        self.marker_ids: FrozenSet[str] = frozenset(self._markers_by_id)

    # -- lookups -----------------------------------------------------------

    def marker(self, marker_id: str) -> Optional[MarkerSpec]:
        return self._markers_by_id.get(marker_id)

    def question(self, question_id: str) -> Optional[QuestionSpec]:
        return self._questions_by_id.get(question_id)

    def route(self, route_id: str) -> Optional[RouteSpec]:
        return self._routes_by_id.get(route_id)

    def route_markers(self, route_id: str) -> Tuple[MarkerSpec, ...]:
        return self._route_markers.get(route_id, ())

    def first_route_id(self) -> Optional[str]:
        return self.routes[0].id if self.routes else None

    def next_route_id(self, route_id: str) -> Optional[str]:
        for index, route in enumerate(self.routes):
            if route.id == route_id:
                following = self.routes[index + 1:index + 2]
                return following[0].id if following else None
        return None

    def is_last_in_route(self, marker_id: str) -> bool:
        marker = self.marker(marker_id)
        if marker is None:
            return False
        return self.route_markers(marker.route_id)[-1].id == marker_id

    # -- progression queries -----------------------------------------------

    def first_incomplete_position(self, completed_marker_ids: Iterable[str]) -> int:
        """Position in traversal order of the first marker not yet completed."""
        completed = set(completed_marker_ids)
        for position, marker in enumerate(self.markers):
            if marker.id not in completed:
                return position
        return len(self.markers)

    def is_marker_reachable(self, marker_id: str, completed_marker_ids: Iterable[str]) -> bool:
        position = self._position.get(marker_id)
        if position is None:
            return False
        return position <= self.first_incomplete_position(completed_marker_ids)

    def next_marker(self, completed_marker_ids: Iterable[str]) -> Optional[MarkerSpec]:
        position = self.first_incomplete_position(completed_marker_ids)
        if position >= len(self.markers):
            return None
        return self.markers[position]

    def hint_for_marker(self, marker_id: str, completed_marker_ids: Iterable[str]) -> Optional[str]:
        """Clue shown for a marker.

        Once the marker is completed its own ``hint_to_next`` points onward.
        Before that, the preceding marker's hint guides the player towards it;
        the first marker of a route falls back to the route's starting hint.
        """
        marker = self.marker(marker_id)
        if marker is None:
            return None
        completed = set(completed_marker_ids)
        if marker_id in completed:
            return marker.hint_to_next or None

        position = self._position[marker_id]
        route = self._routes_by_id[marker.route_id]
        first_in_route = self.route_markers(route.id)[0].id == marker_id
        if position == 0:
            return route.starting_hint or None
        previous_hint = self.markers[position - 1].hint_to_next
        if not previous_hint and first_in_route:
            return route.starting_hint or None
        return previous_hint or None

    def is_campaign_fully_complete(self, completed_marker_ids: Iterable[str]) -> bool:
        completed = set(completed_marker_ids)
        return bool(self.marker_ids) and completed == set(self.marker_ids)

    def summary(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "name": self.name,
            "routes": len(self.routes),
            "markers": len(self.markers),
            "questions": len(self._questions_by_id),
            "max_score": sum(question.points for question in self._questions_by_id.values()),
        }


# -- campaign files ------------------------------------------------------------


def _entry_id(entry: Dict[str, Any]) -> str:
    return str(entry["id"]) if entry.get("id") else str(uuid.uuid4())


def graph_from_payload(payload: Dict[str, Any]) -> ProgressionGraph:
    """Parse a campaign JSON document into a validated graph.

    Entries without an ``id`` get a fresh uuid, the same ids the database
    import stores. Raises KeyError, TypeError or ValueError on malformed input.
    """
    routes = []
    for route_index, route_entry in enumerate(payload.get("routes") or []):
        route_id = _entry_id(route_entry)
        markers = []
        for marker_index, marker_entry in enumerate(route_entry.get("markers") or []):
            markers.append(_marker_from_payload(route_id, marker_entry, marker_index))
        routes.append(
            RouteSpec(
                id=route_id,
                order_index=int(route_entry.get("order_index", route_index)),
                starting_hint=route_entry.get("starting_hint"),
                name=route_entry.get("name") or "",
                markers=tuple(markers),
            )
        )
    return ProgressionGraph(
        _entry_id(payload),
        routes,
        name=payload.get("name") or "Untitled campaign",
        unlock_radius_m=payload.get("unlock_radius_m"),
    )


def _marker_from_payload(route_id: str, entry: Dict[str, Any], default_index: int) -> MarkerSpec:
    marker_id = _entry_id(entry)
    kind = "waypoint" if "waypoint" in entry else "campaign_marker"
    location = entry.get(kind) or {}
    questions = tuple(
        build_question(
            question_entry.get("type") or TextInputQuestion.kind,
            id=_entry_id(question_entry),
            marker_id=marker_id,
            order_index=int(question_entry.get("order_index", question_index)),
            prompt=question_entry.get("prompt") or "",
            correct_answer=str(question_entry.get("correct_answer") or ""),
            points=int(question_entry.get("points") or 10),
            options=question_entry.get("options"),
        )
        for question_index, question_entry in enumerate(entry.get("questions") or [])
    )
    return MarkerSpec(
        id=marker_id,
        route_id=route_id,
        order_index=int(entry.get("order_index", default_index)),
        position=LatLng(float(location["latitude"]), float(location["longitude"])),
        name=location.get("name") or "",
        description=location.get("description") or "",
        hint_to_next=entry.get("hint_to_next"),
        location_kind=kind,
        location_id=_entry_id(location),
        category=location.get("category"),
        questions=questions,
    )
