"""SQLAlchemy persistence for the game mode.

Every write commits or rolls back as a unit; database failures are logged and
re-raised as StorageError so callers never observe a half-applied mutation.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from flask import current_app
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from models import (
    Campaign,
    CampaignMarker,
    ProgressionRecord,
    Question,
    QuestionAttempt,
    Route,
    RouteMarker,
    User,
    Waypoint,
)

from .errors import GameModeError, InvalidState, NotFound, StorageError, ValidationError
from .geo import LatLng
from .graph import (
    MarkerSpec,
    MultipleChoiceQuestion,
    ProgressionGraph,
    RouteSpec,
    build_question,
    graph_from_payload,
)


class ConcurrentUpdate(StorageError):
    """Another request changed the progression record first."""

    status_code = 409
    error_code = "concurrent_update"


class DuplicateRecord(StorageError):
    """A uniqueness constraint rejected the insert."""

    status_code = 409
    error_code = "duplicate_record"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _write(action: str) -> Iterator[None]:
    try:
        yield
        db.session.commit()
    except GameModeError:
        db.session.rollback()
        raise
    except StaleDataError as exc:
        db.session.rollback()
        current_app.logger.warning("Concurrent update while %s: %s", action, exc)
        raise ConcurrentUpdate("Progress changed while saving, please retry") from exc
    except IntegrityError as exc:
        db.session.rollback()
        current_app.logger.warning("Integrity error while %s: %s", action, exc)
        raise DuplicateRecord(f"Conflicting data while {action}") from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Database error while %s: %s", action, exc)
        raise StorageError(f"Failed while {action}") from exc


@contextmanager
def _read(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Database error while %s: %s", action, exc)
        raise StorageError(f"Failed while {action}") from exc


# -- campaign graph ---------------------------------------------------------


def get_campaign(campaign_id: str) -> Optional[Campaign]:
    with _read("loading campaign"):
        return db.session.get(Campaign, campaign_id)


def load_graph(campaign_id: str) -> ProgressionGraph:
    """Build the read-only progression graph for one campaign."""
    with _read("loading campaign graph"):
        campaign = db.session.execute(
            select(Campaign)
            .where(Campaign.id == campaign_id)
            .options(
                selectinload(Campaign.routes)
                .selectinload(Route.markers)
                .selectinload(RouteMarker.questions),
                selectinload(Campaign.routes)
                .selectinload(Route.markers)
                .selectinload(RouteMarker.waypoint),
                selectinload(Campaign.routes)
                .selectinload(Route.markers)
                .selectinload(RouteMarker.campaign_marker),
            )
        ).scalar_one_or_none()
    if campaign is None:
        raise NotFound("Campaign not found", payload={"error": "campaign_not_found"})

    routes = [_route_spec(route) for route in campaign.routes]
    try:
        return ProgressionGraph(
            campaign.id,
            routes,
            name=campaign.name,
            unlock_radius_m=campaign.unlock_radius_m,
        )
    except ValueError as exc:
        current_app.logger.error("Campaign %s has an invalid route layout: %s", campaign_id, exc)
        raise StorageError("Campaign data is invalid", payload={"error": "invalid_campaign", "detail": str(exc)}) from exc


def _route_spec(route: Route) -> RouteSpec:
    return RouteSpec(
        id=route.id,
        order_index=route.order_index,
        starting_hint=route.starting_hint,
        name=route.name or "",
        markers=tuple(_marker_spec(marker) for marker in route.markers),
    )


def _marker_spec(marker: RouteMarker) -> MarkerSpec:
    if marker.waypoint is not None:
        location, kind = marker.waypoint, "waypoint"
    elif marker.campaign_marker is not None:
        location, kind = marker.campaign_marker, "campaign_marker"
    else:
        raise StorageError(
            "Route marker has no location",
            payload={"error": "invalid_campaign", "detail": f"marker {marker.id} has no location"},
        )

    questions = []
    for row in marker.questions:
        try:
            questions.append(
                build_question(
                    row.question_type,
                    id=row.id,
                    marker_id=marker.id,
                    order_index=row.order_index,
                    prompt=row.prompt,
                    correct_answer=row.correct_answer,
                    points=row.points,
                    options=row.options,
                )
            )
        except (TypeError, ValueError) as exc:
            current_app.logger.error("Rejected question %s: %s", row.id, exc)
            raise StorageError(
                "Question data is invalid",
                payload={"error": "invalid_question", "detail": str(exc)},
            ) from exc

    return MarkerSpec(
        id=marker.id,
        route_id=marker.route_id,
        order_index=marker.order_index,
        position=LatLng(location.latitude, location.longitude),
        name=location.name,
        description=location.description or "",
        hint_to_next=marker.hint_to_next,
        location_kind=kind,
        location_id=location.id,
        category=getattr(location, "category", None),
        questions=tuple(questions),
    )


# -- identity ---------------------------------------------------------------


def get_user(user_id: str) -> Optional[User]:
    if not user_id:
        return None
    with _read("loading user"):
        return db.session.get(User, user_id)


def user_role(user_id: str) -> Optional[str]:
    user = get_user(user_id)
    return user.role if user else None


# -- progression records ----------------------------------------------------


def get_record(progress_id: str) -> Optional[ProgressionRecord]:
    if not progress_id:
        return None
    with _read("loading progress"):
        return db.session.get(ProgressionRecord, progress_id)


def get_active_record(user_id: str, campaign_id: str) -> Optional[ProgressionRecord]:
    with _read("loading progress"):
        return ProgressionRecord.query.filter_by(
            user_id=user_id, campaign_id=campaign_id, superseded_at=None
        ).first()


def get_record_by_code(code: str) -> Optional[ProgressionRecord]:
    with _read("looking up verification code"):
        return ProgressionRecord.query.filter_by(verification_code=code).first()


def verification_code_exists(code: str) -> bool:
    with _read("checking verification code"):
        return db.session.execute(
            select(ProgressionRecord.id).where(ProgressionRecord.verification_code == code).limit(1)
        ).first() is not None


def list_records_for_user(user_id: str) -> List[ProgressionRecord]:
    with _read("listing user progress"):
        return (
            ProgressionRecord.query.filter_by(user_id=user_id)
            .order_by(ProgressionRecord.started_at.desc())
            .all()
        )


def list_records_for_campaign(campaign_id: str) -> List[ProgressionRecord]:
    with _read("listing campaign progress"):
        return (
            ProgressionRecord.query.filter_by(campaign_id=campaign_id)
            .order_by(ProgressionRecord.started_at.asc())
            .all()
        )


def create_record(
    user_id: str,
    campaign_id: str,
    *,
    first_route_id: Optional[str],
    verification_code: str,
    supersede: Optional[ProgressionRecord] = None,
) -> ProgressionRecord:
    """Insert a fresh record, optionally retiring ``supersede`` in the same transaction."""
    now = _now()
    record = ProgressionRecord(
        user_id=user_id,
        campaign_id=campaign_id,
        current_route_id=first_route_id,
        current_marker_index=0,
        completed_route_ids=[],
        completed_marker_ids=[],
        total_score=0,
        is_completed=False,
        verification_code=verification_code,
        points_collected=False,
        started_at=now,
        last_activity_at=now,
    )
    with _write("creating progress"):
        if supersede is not None:
            supersede.superseded_at = now
            # Flush the retirement first so the active-record index sees one row.
            db.session.flush()
        db.session.add(record)
    return record


def save_record(record: ProgressionRecord) -> ProgressionRecord:
    with _write("saving progress"):
        db.session.add(record)
    return record


def refresh_record(record: ProgressionRecord) -> ProgressionRecord:
    with _read("reloading progress"):
        db.session.refresh(record)
    return record


def mark_collected(progress_id: str, admin_id: str, collected_at: datetime) -> bool:
    """Flip points_collected only if the record is completed and not yet collected."""
    with _write("marking points collected"):
        result = db.session.execute(
            update(ProgressionRecord)
            .where(
                and_(
                    ProgressionRecord.id == progress_id,
                    ProgressionRecord.is_completed.is_(True),
                    ProgressionRecord.points_collected.is_(False),
                )
            )
            .values(
                points_collected=True,
                collected_by=admin_id,
                collected_at=collected_at,
                version=ProgressionRecord.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


# -- question attempts ------------------------------------------------------


def append_attempt(
    record: ProgressionRecord,
    *,
    user_id: str,
    question_id: str,
    user_answer: str,
    is_correct: bool,
    points_earned: int,
    attempted_at: datetime,
) -> QuestionAttempt:
    """Store the attempt and add its points to the record atomically."""
    attempt = QuestionAttempt(
        user_id=user_id,
        question_id=question_id,
        progress_id=record.id,
        user_answer=user_answer,
        is_correct=is_correct,
        points_earned=points_earned,
        attempted_at=attempted_at,
    )
    with _write("recording attempt"):
        result = db.session.execute(
            update(ProgressionRecord)
            .where(
                and_(
                    ProgressionRecord.id == record.id,
                    ProgressionRecord.superseded_at.is_(None),
                    ProgressionRecord.points_collected.is_(False),
                )
            )
            .values(
                total_score=ProgressionRecord.total_score + points_earned,
                last_activity_at=attempted_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidState(
                "Progress no longer accepts answers",
                payload={"error": "progress_closed"},
            )
        db.session.add(attempt)
    return attempt


def has_correct_attempt(progress_id: str, question_id: str) -> bool:
    with _read("checking previous attempts"):
        return db.session.execute(
            select(QuestionAttempt.id)
            .where(
                QuestionAttempt.progress_id == progress_id,
                QuestionAttempt.question_id == question_id,
                QuestionAttempt.is_correct.is_(True),
            )
            .limit(1)
        ).first() is not None


def list_attempts(progress_id: str) -> List[QuestionAttempt]:
    with _read("listing attempts"):
        return (
            QuestionAttempt.query.filter_by(progress_id=progress_id)
            .order_by(QuestionAttempt.attempted_at.asc())
            .all()
        )


# -- seeding ----------------------------------------------------------------


def import_campaign(payload: Dict[str, Any]) -> Campaign:
    """Create a campaign (and its routes, markers, questions) from a JSON payload."""
    try:
        graph = graph_from_payload(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(
            "Campaign file is malformed",
            payload={"error": "invalid_campaign_file", "detail": str(exc)},
        ) from exc

    campaign = Campaign(
        id=graph.campaign_id,
        name=graph.name,
        description=payload.get("description"),
        unlock_radius_m=graph.unlock_radius_m,
    )
    for route_spec in graph.routes:
        route = Route(
            id=route_spec.id,
            name=route_spec.name,
            order_index=route_spec.order_index,
            starting_hint=route_spec.starting_hint,
        )
        campaign.routes.append(route)
        for marker_spec in graph.route_markers(route_spec.id):
            route.markers.append(_route_marker_row(graph.campaign_id, marker_spec))

    with _write("importing campaign"):
        db.session.add(campaign)
    return campaign


def _route_marker_row(campaign_id: str, spec: MarkerSpec) -> RouteMarker:
    marker = RouteMarker(id=spec.id, order_index=spec.order_index, hint_to_next=spec.hint_to_next)
    location_fields = dict(
        id=spec.location_id,
        name=spec.name,
        description=spec.description,
        latitude=spec.position.lat,
        longitude=spec.position.lng,
    )
    if spec.location_kind == "waypoint":
        marker.waypoint = Waypoint(category=spec.category, **location_fields)
    else:
        marker.campaign_marker = CampaignMarker(campaign_id=campaign_id, **location_fields)

    for question in spec.questions:
        marker.questions.append(
            Question(
                id=question.id,
                order_index=question.order_index,
                question_type=question.kind,
                prompt=question.prompt,
                options=list(question.options) if isinstance(question, MultipleChoiceQuestion) else None,
                correct_answer=question.correct_answer,
                points=question.points,
            )
        )
    return marker
