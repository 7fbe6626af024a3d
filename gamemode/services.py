from __future__ import annotations

from typing import Any, Dict, List, Optional

from flask import current_app

from models import ProgressionRecord, User

from . import storage
from .errors import GameModeError, InvalidState, NotFound, Unauthorized, ValidationError
from .geo import DEFAULT_UNLOCK_RADIUS_M, coerce_latlng
from .graph import ProgressionGraph
from .progression import ProgressionStateMachine
from .tokens import CollectionTokenService
from .unlock import resolve


def _config(key: str, default: Any) -> Any:
    value = current_app.config.get(key)
    return default if value is None else value


def unlock_radius_for(graph: ProgressionGraph) -> float:
    if graph.unlock_radius_m is not None:
        return float(graph.unlock_radius_m)
    return float(_config("GAMEMODE_UNLOCK_RADIUS_M", DEFAULT_UNLOCK_RADIUS_M))


def token_service() -> CollectionTokenService:
    return CollectionTokenService(
        base_url=_config("PRODUCTION_URL", "http://localhost:5001"),
        max_code_attempts=int(_config("GAMEMODE_CODE_MAX_ATTEMPTS", 10)),
        qr_box_size=int(_config("GAMEMODE_QR_BOX_SIZE", 10)),
        qr_border=int(_config("GAMEMODE_QR_BORDER", 2)),
    )


def _state_machine(graph: ProgressionGraph, record: ProgressionRecord) -> ProgressionStateMachine:
    return ProgressionStateMachine(
        graph,
        record,
        score_repeat_attempts=bool(_config("GAMEMODE_SCORE_REPEAT_ATTEMPTS", True)),
        max_retries=int(_config("GAMEMODE_COMPLETE_RETRIES", 3)),
    )


def _require_user(user_id: Optional[str]) -> User:
    user = storage.get_user(user_id) if user_id else None
    if user is None:
        raise NotFound("User not found", payload={"error": "user_not_found"})
    return user


def _require_admin(admin_id: Optional[str]) -> User:
    admin = storage.get_user(admin_id) if admin_id else None
    if admin is None or not admin.is_admin:
        current_app.logger.warning("Admin-only request rejected for %s", admin_id)
        raise Unauthorized("Admin access required", payload={"error": "admin_required"})
    return admin


def _owned_record(progress_id: str, user_id: Optional[str]) -> ProgressionRecord:
    record = storage.get_record(progress_id)
    # Someone else's record looks exactly like a missing one.
    if record is None or (user_id is not None and record.user_id != user_id):
        raise NotFound("Campaign progress not found", payload={"error": "progress_not_found"})
    return record


def start_campaign(user_id: str, campaign_id: str, *, play_again: bool = False) -> Dict[str, Any]:
    """Return the player's active record, creating one (or a replay) when needed."""
    _require_user(user_id)
    graph = storage.load_graph(campaign_id)
    if not graph.markers:
        raise InvalidState("Campaign has no markers yet", payload={"error": "campaign_empty"})

    existing = storage.get_active_record(user_id, campaign_id)
    if existing is not None and not (existing.is_completed and play_again):
        return {"created": False, "progress": existing.to_summary_dict()}
    if existing is not None and not _config("GAMEMODE_PLAY_AGAIN", True):
        raise InvalidState("Replaying campaigns is disabled", payload={"error": "play_again_disabled"})

    service = token_service()
    attempts = int(_config("GAMEMODE_CODE_MAX_ATTEMPTS", 10))
    for attempt in range(attempts):
        code = service.issue_verification_code()
        try:
            record = storage.create_record(
                user_id,
                campaign_id,
                first_route_id=graph.first_route_id(),
                verification_code=code,
                supersede=existing,
            )
        except storage.DuplicateRecord:
            # Either the code was taken since we checked, or a parallel start won.
            concurrent = storage.get_active_record(user_id, campaign_id)
            if concurrent is not None and (existing is None or concurrent.id != existing.id):
                return {"created": False, "progress": concurrent.to_summary_dict()}
            if attempt + 1 >= attempts:
                raise
            continue
        current_app.logger.info(
            "User %s started campaign %s (progress %s%s)",
            user_id,
            campaign_id,
            record.id,
            ", replay" if existing is not None else "",
        )
        return {"created": True, "progress": record.to_summary_dict()}
    raise InvalidState("Could not start campaign", payload={"error": "start_failed"})


def get_progress(user_id: str, campaign_id: str) -> Dict[str, Any]:
    record = storage.get_active_record(user_id, campaign_id)
    if record is None:
        raise NotFound("Progress not found", payload={"error": "progress_not_found"})
    return record.to_summary_dict()


def list_user_progress(user_id: str) -> List[Dict[str, Any]]:
    return [record.to_summary_dict() for record in storage.list_records_for_user(user_id)]


def list_campaign_progress(campaign_id: str, admin_id: str) -> List[Dict[str, Any]]:
    _require_admin(admin_id)
    if storage.get_campaign(campaign_id) is None:
        raise NotFound("Campaign not found", payload={"error": "campaign_not_found"})
    return [record.to_summary_dict() for record in storage.list_records_for_campaign(campaign_id)]


def get_unlock_state(user_id: str, campaign_id: str, latitude, longitude) -> Dict[str, Any]:
    if latitude is None or longitude is None:
        raise ValidationError("Latitude and longitude required", payload={"error": "missing_coordinates"})
    try:
        location = coerce_latlng(latitude, longitude)
    except (TypeError, ValueError):
        raise ValidationError("Invalid coordinate values", payload={"error": "invalid_coordinates"})

    graph = storage.load_graph(campaign_id)
    record = storage.get_active_record(user_id, campaign_id)
    completed = list(record.completed_marker_ids or []) if record else []
    snapshot = resolve(location, graph, completed, unlock_radius_for(graph))

    payload = snapshot.to_dict()
    payload["campaign_id"] = campaign_id
    payload["progress_id"] = record.id if record else None
    payload["completed_count"] = len(completed)
    payload["total_markers"] = len(graph.markers)
    return payload


def get_marker_questions(progress_id: str, user_id: Optional[str], marker_id: str) -> Dict[str, Any]:
    record = _owned_record(progress_id, user_id)
    graph = storage.load_graph(record.campaign_id)
    marker = graph.marker(marker_id)
    if marker is None:
        raise NotFound("Marker not found in this campaign", payload={"error": "marker_not_found"})
    completed = list(record.completed_marker_ids or [])
    if not graph.is_marker_reachable(marker_id, completed):
        raise InvalidState("Marker is still locked", payload={"error": "marker_locked"})
    return {
        "marker_id": marker.id,
        "name": marker.name,
        "description": marker.description,
        "questions": [question.to_public_dict() for question in marker.questions],
        "hint": graph.hint_for_marker(marker_id, completed),
    }


def submit_answer(progress_id: str, user_id: Optional[str], question_id: str, answer: Optional[str]) -> Dict[str, Any]:
    if not question_id:
        raise ValidationError("question_id is required", payload={"error": "missing_question"})
    if answer is None or not str(answer).strip():
        raise ValidationError("An answer is required", payload={"error": "missing_answer"})
    record = _owned_record(progress_id, user_id)
    graph = storage.load_graph(record.campaign_id)
    result = _state_machine(graph, record).record_attempt(question_id, str(answer))
    return result.to_dict()


def complete_marker(progress_id: str, user_id: Optional[str], marker_id: str) -> Dict[str, Any]:
    record = _owned_record(progress_id, user_id)
    graph = storage.load_graph(record.campaign_id)
    result = _state_machine(graph, record).complete_marker(marker_id)
    payload = result.to_dict()
    payload["progress"] = record.to_summary_dict()
    return payload


def list_attempts(progress_id: str, user_id: Optional[str]) -> List[Dict[str, Any]]:
    record = _owned_record(progress_id, user_id)
    return [attempt.to_dict() for attempt in storage.list_attempts(record.id)]


def issue_qr(progress_id: str, user_id: Optional[str]) -> Dict[str, Any]:
    record = _owned_record(progress_id, user_id)
    return token_service().issue_token(record).to_dict()


def verify(admin_id: str, token: Optional[str] = None, verification_code: Optional[str] = None) -> Dict[str, Any]:
    if verification_code:
        return token_service().verify(verification_code, admin_id, is_code=True)
    return token_service().verify(token or "", admin_id, is_code=False)


def mark_points_collected(progress_id: str, admin_id: str) -> Dict[str, Any]:
    if not progress_id:
        raise ValidationError("progress_id is required", payload={"error": "missing_progress_id"})
    record = storage.get_record(progress_id)
    if record is None:
        raise NotFound("Campaign progress not found", payload={"error": "progress_not_found"})
    graph = storage.load_graph(record.campaign_id)
    updated = _state_machine(graph, record).mark_points_collected(admin_id)
    return updated.to_summary_dict()


__all__ = [
    "GameModeError",
    "complete_marker",
    "get_marker_questions",
    "get_progress",
    "get_unlock_state",
    "issue_qr",
    "list_attempts",
    "list_campaign_progress",
    "list_user_progress",
    "mark_points_collected",
    "start_campaign",
    "submit_answer",
    "unlock_radius_for",
    "verify",
]
