"""Authoritative per-user, per-campaign progression.

A record starts InProgress and becomes Completed once every marker of every
route is completed. ``points_collected`` is a separate one-way flag that an
admin may set only after completion.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from flask import current_app

from models import ProgressionRecord, User

from . import storage
from .errors import AlreadyCollected, InvalidState, InvalidTransition, NotFound, Unauthorized
from .grading import grade
from .graph import ProgressionGraph

STATE_IN_PROGRESS = "in_progress"
STATE_COMPLETED = "completed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AttemptResult:
    attempt_id: str
    question_id: str
    is_correct: bool
    points_earned: int
    total_score: int

    def to_dict(self) -> dict:
        return {
            "attempt_id": self.attempt_id,
            "question_id": self.question_id,
            "is_correct": self.is_correct,
            "points_earned": self.points_earned,
            "total_score": self.total_score,
        }


@dataclass(frozen=True)
class CompletionResult:
    marker_id: str
    already_completed: bool
    route_completed: bool
    campaign_completed: bool
    hint_to_next: Optional[str]

    def to_dict(self) -> dict:
        return {
            "marker_id": self.marker_id,
            "already_completed": self.already_completed,
            "route_completed": self.route_completed,
            "campaign_completed": self.campaign_completed,
            "hint_to_next": self.hint_to_next,
        }


class ProgressionStateMachine:
    def __init__(
        self,
        graph: ProgressionGraph,
        record: ProgressionRecord,
        *,
        store=storage,
        score_repeat_attempts: bool = True,
        max_retries: int = 3,
        clock: Callable[[], datetime] = _now,
    ):
        if record.campaign_id != graph.campaign_id:
            raise InvalidState(
                "Progress record belongs to a different campaign",
                payload={"error": "campaign_mismatch"},
            )
        self.graph = graph
        self.record = record
        self.store = store
        self.score_repeat_attempts = score_repeat_attempts
        self.max_retries = max(0, int(max_retries))
        self.clock = clock

    @property
    def state(self) -> str:
        return STATE_COMPLETED if self.record.is_completed else STATE_IN_PROGRESS

    def record_attempt(self, question_id: str, raw_answer: str) -> AttemptResult:
        """Grade and store one answer; never moves the marker cursor."""
        question = self.graph.question(question_id)
        if question is None:
            raise NotFound("Question not found", payload={"error": "question_not_found"})
        self._check_open()

        completed = list(self.record.completed_marker_ids or [])
        if not self.graph.is_marker_reachable(question.marker_id, completed):
            raise InvalidTransition(
                "Marker for this question is not unlocked yet",
                payload={"error": "marker_locked", "marker_id": question.marker_id},
            )

        result = grade(question, raw_answer)
        points = result.points_earned
        if (
            result.is_correct
            and not self.score_repeat_attempts
            and self.store.has_correct_attempt(self.record.id, question.id)
        ):
            points = 0

        attempt = self.store.append_attempt(
            self.record,
            user_id=self.record.user_id,
            question_id=question.id,
            user_answer=raw_answer or "",
            is_correct=result.is_correct,
            points_earned=points,
            attempted_at=self.clock(),
        )
        self.store.refresh_record(self.record)
        return AttemptResult(
            attempt_id=attempt.id,
            question_id=question.id,
            is_correct=result.is_correct,
            points_earned=points,
            total_score=self.record.total_score,
        )

    def complete_marker(self, marker_id: str) -> CompletionResult:
        """Add a marker to the completed set, advancing route and campaign state.

        Completing an already completed marker is a no-op. Out-of-sequence
        completion is rejected even if the client believed it was unlocked.
        """
        marker = self.graph.marker(marker_id)
        if marker is None:
            raise NotFound("Marker not found in this campaign", payload={"error": "marker_not_found"})

        for attempt in range(self.max_retries + 1):
            self._check_open()
            completed = list(self.record.completed_marker_ids or [])
            if marker_id in completed:
                return CompletionResult(
                    marker_id=marker_id,
                    already_completed=True,
                    route_completed=marker.route_id in (self.record.completed_route_ids or []),
                    campaign_completed=bool(self.record.is_completed),
                    hint_to_next=marker.hint_to_next,
                )
            if not self.graph.is_marker_reachable(marker_id, completed):
                raise InvalidTransition(
                    "Markers must be completed in order",
                    payload={"error": "marker_out_of_sequence", "marker_id": marker_id},
                )

            route_completed, campaign_completed = self._apply_completion(marker_id, completed)
            try:
                self.store.save_record(self.record)
            except storage.ConcurrentUpdate:
                if attempt >= self.max_retries:
                    raise
                current_app.logger.info(
                    "Retrying completion of marker %s on progress %s", marker_id, self.record.id
                )
                self.store.refresh_record(self.record)
                continue

            current_app.logger.info(
                "Progress %s completed marker %s (route done: %s, campaign done: %s)",
                self.record.id,
                marker_id,
                route_completed,
                campaign_completed,
            )
            return CompletionResult(
                marker_id=marker_id,
                already_completed=False,
                route_completed=route_completed,
                campaign_completed=campaign_completed,
                hint_to_next=marker.hint_to_next,
            )
        raise storage.ConcurrentUpdate("Progress changed while saving, please retry")

    def _apply_completion(self, marker_id: str, completed: list) -> tuple:
        record = self.record
        marker = self.graph.marker(marker_id)
        now = self.clock()

        completed = completed + [marker_id]
        record.completed_marker_ids = completed
        record.last_activity_at = now

        route_markers = self.graph.route_markers(marker.route_id)
        route_completed = self.graph.is_last_in_route(marker_id)
        if route_completed:
            completed_routes = list(record.completed_route_ids or [])
            if marker.route_id not in completed_routes:
                completed_routes.append(marker.route_id)
            next_route_id = self.graph.next_route_id(marker.route_id)
            # Routes without markers are finished as soon as they are reached.
            while next_route_id and not self.graph.route_markers(next_route_id):
                completed_routes.append(next_route_id)
                next_route_id = self.graph.next_route_id(next_route_id)
            record.completed_route_ids = completed_routes
            record.current_route_id = next_route_id
            record.current_marker_index = 0
        else:
            position = [m.id for m in route_markers].index(marker_id)
            record.current_route_id = marker.route_id
            record.current_marker_index = position + 1

        campaign_completed = False
        if not record.is_completed and self.graph.is_campaign_fully_complete(completed):
            record.is_completed = True
            if record.completed_at is None:
                record.completed_at = now
            campaign_completed = True
        return route_completed, campaign_completed

    def mark_points_collected(self, admin_id: str) -> ProgressionRecord:
        """One-shot hand-off of the physical reward, recorded against an admin."""
        if self.store.user_role(admin_id) != User.ROLE_ADMIN:
            current_app.logger.warning("Non-admin %s tried to collect points for %s", admin_id, self.record.id)
            raise Unauthorized("Admin access required", payload={"error": "admin_required"})
        self._check_collectable()

        if not self.store.mark_collected(self.record.id, admin_id, self.clock()):
            # Lost a race or state changed underneath us; report what we find now.
            self.store.refresh_record(self.record)
            self._check_collectable()
            raise InvalidState("Points could not be collected", payload={"error": "not_collectable"})

        self.store.refresh_record(self.record)
        current_app.logger.info("Admin %s collected points for progress %s", admin_id, self.record.id)
        return self.record

    def _check_open(self) -> None:
        """Superseded and redeemed records are kept as history and no longer change."""
        if self.record.superseded_at is not None:
            raise InvalidState(
                "This progress was replaced by a newer run",
                payload={"error": "progress_superseded"},
            )
        if self.record.points_collected:
            raise InvalidState(
                "Points for this progress were already collected",
                payload={"error": "progress_redeemed"},
            )

    def _check_collectable(self) -> None:
        if not self.record.is_completed:
            raise InvalidState(
                "Campaign is not completed yet",
                payload={"error": "campaign_not_completed"},
            )
        if self.record.points_collected:
            raise AlreadyCollected(
                "Points were already collected",
                payload={
                    "error": "already_collected",
                    "collected_by": self.record.collected_by,
                },
            )
