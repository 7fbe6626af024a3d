"""Database models for the heritage trails game mode."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func

from extensions import db


def _uuid() -> str:
    return str(uuid.uuid4())


class User(db.Model):
    """Minimal identity row; authentication lives outside the game mode."""

    __tablename__ = "users"

    ROLE_USER = "user"
    ROLE_ADMIN = "admin"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    username = db.Column(db.String(120), nullable=False, unique=True)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)
    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == self.ROLE_ADMIN


class Waypoint(db.Model):
    """A general heritage point of interest that campaigns can reuse."""

    __tablename__ = "waypoints"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    category = db.Column(db.String(50), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)


class Campaign(db.Model):
    __tablename__ = "campaigns"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    # Overrides GAMEMODE_UNLOCK_RADIUS_M for this campaign when set.
    unlock_radius_m = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)

    routes = db.relationship(
        "Route",
        backref="campaign",
        order_by="Route.order_index",
        cascade="all, delete-orphan",
    )


class CampaignMarker(db.Model):
    """A point of interest that only exists inside one campaign."""

    __tablename__ = "campaign_markers"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    campaign_id = db.Column(
        db.String(36), db.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)

    campaign = db.relationship("Campaign")


class Route(db.Model):
    __tablename__ = "routes"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    campaign_id = db.Column(
        db.String(36), db.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = db.Column(db.String(200), nullable=False, default="")
    order_index = db.Column(db.Integer, nullable=False)
    starting_hint = db.Column(db.Text, nullable=True)

    markers = db.relationship(
        "RouteMarker",
        backref="route",
        order_by="RouteMarker.order_index",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("campaign_id", "order_index", name="uq_route_campaign_order"),
    )


class RouteMarker(db.Model):
    """One stop of a route; positioned by exactly one waypoint or campaign marker."""

    __tablename__ = "route_markers"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    route_id = db.Column(
        db.String(36), db.ForeignKey("routes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_index = db.Column(db.Integer, nullable=False)
    waypoint_id = db.Column(db.String(36), db.ForeignKey("waypoints.id"), nullable=True)
    campaign_marker_id = db.Column(db.String(36), db.ForeignKey("campaign_markers.id"), nullable=True)
    hint_to_next = db.Column(db.Text, nullable=True)

    waypoint = db.relationship("Waypoint")
    campaign_marker = db.relationship("CampaignMarker")
    questions = db.relationship(
        "Question",
        backref="route_marker",
        order_by="Question.order_index",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("route_id", "order_index", name="uq_route_marker_order"),
        db.CheckConstraint(
            "(waypoint_id IS NULL) <> (campaign_marker_id IS NULL)",
            name="ck_route_marker_single_location",
        ),
    )


class Question(db.Model):
    __tablename__ = "questions"

    TYPE_MULTIPLE_CHOICE = "multiple_choice"
    TYPE_TRUE_FALSE = "true_false"
    TYPE_TEXT_INPUT = "text_input"
    TYPES = (TYPE_MULTIPLE_CHOICE, TYPE_TRUE_FALSE, TYPE_TEXT_INPUT)

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    route_marker_id = db.Column(
        db.String(36), db.ForeignKey("route_markers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_index = db.Column(db.Integer, nullable=False, default=0)
    question_type = db.Column(db.String(20), nullable=False)
    prompt = db.Column(db.Text, nullable=False)
    options = db.Column(db.JSON, nullable=True)
    correct_answer = db.Column(db.Text, nullable=False)
    points = db.Column(db.Integer, nullable=False, default=10)


class ProgressionRecord(db.Model):
    """Per-user, per-campaign progress; the only mutable state the game mode owns."""

    __tablename__ = "campaign_progress"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    campaign_id = db.Column(
        db.String(36), db.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    current_route_id = db.Column(db.String(36), nullable=True)
    current_marker_index = db.Column(db.Integer, nullable=False, default=0)
    completed_route_ids = db.Column(db.JSON, nullable=False, default=lambda: [])
    completed_marker_ids = db.Column(db.JSON, nullable=False, default=lambda: [])
    total_score = db.Column(db.Integer, nullable=False, default=0)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    verification_code = db.Column(db.String(12), nullable=False, unique=True)
    points_collected = db.Column(db.Boolean, nullable=False, default=False)
    collected_by = db.Column(db.String(36), nullable=True)
    collected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: _utcnow())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: _utcnow())
    # Set when "play again" replaces this record with a fresh one.
    superseded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    attempts = db.relationship(
        "QuestionAttempt",
        backref="progress",
        order_by="QuestionAttempt.attempted_at",
        cascade="all, delete-orphan",
        lazy="dynamic",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        db.Index(
            "uq_progress_active_user_campaign",
            "user_id",
            "campaign_id",
            unique=True,
            sqlite_where=db.text("superseded_at IS NULL"),
            postgresql_where=db.text("superseded_at IS NULL"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.superseded_at is None

    def to_summary_dict(self) -> dict:
        """Serialize the record for player and admin API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "campaign_id": self.campaign_id,
            "current_route_id": self.current_route_id,
            "current_marker_index": self.current_marker_index,
            "completed_route_ids": list(self.completed_route_ids or []),
            "completed_marker_ids": list(self.completed_marker_ids or []),
            "total_score": self.total_score,
            "is_completed": self.is_completed,
            "verification_code": self.verification_code,
            "points_collected": self.points_collected,
            "collected_by": self.collected_by,
            "collected_at": _isoformat_or_none(self.collected_at),
            "started_at": _isoformat_or_none(self.started_at),
            "completed_at": _isoformat_or_none(self.completed_at),
            "last_activity_at": _isoformat_or_none(self.last_activity_at),
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<ProgressionRecord id={self.id} user={self.user_id!r} campaign={self.campaign_id!r}>"


class QuestionAttempt(db.Model):
    """Append-only record of one submitted answer."""

    __tablename__ = "question_attempts"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_id = db.Column(
        db.String(36), db.ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    progress_id = db.Column(
        db.String(36), db.ForeignKey("campaign_progress.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_answer = db.Column(db.Text, nullable=False)
    is_correct = db.Column(db.Boolean, nullable=False)
    points_earned = db.Column(db.Integer, nullable=False, default=0)
    attempted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: _utcnow())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "question_id": self.question_id,
            "progress_id": self.progress_id,
            "user_answer": self.user_answer,
            "is_correct": self.is_correct,
            "points_earned": self.points_earned,
            "attempted_at": _isoformat_or_none(self.attempted_at),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    aware = _ensure_aware(value)
    return aware.astimezone(timezone.utc).isoformat()


def _ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
