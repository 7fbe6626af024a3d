from __future__ import annotations

from dataclasses import dataclass

from flask import Blueprint, abort, current_app, jsonify, request

from . import services


gamemode_bp = Blueprint(
    "gamemode",
    __name__,
    url_prefix="/api/game",
)


@dataclass
class FeatureGate:
    flag_name: str = "USE_GAME_MODE"

    def enabled(self) -> bool:
        return bool(current_app.config.get(self.flag_name, False))

    def guard(self) -> None:
        if not self.enabled():
            abort(404)


feature_gate = FeatureGate()


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _clean(value) -> str:
    return str(value).strip() if value is not None else ""


@gamemode_bp.get("/status")
def game_status():
    return jsonify(
        {
            "enabled": feature_gate.enabled(),
            "unlock_radius_m": current_app.config.get("GAMEMODE_UNLOCK_RADIUS_M"),
            "score_repeat_attempts": bool(current_app.config.get("GAMEMODE_SCORE_REPEAT_ATTEMPTS")),
        }
    )


@gamemode_bp.post("/campaigns/<campaign_id>/start")
def start_campaign(campaign_id: str):
    feature_gate.guard()
    payload = _json_body()
    user_id = _clean(payload.get("user_id"))
    if not user_id:
        return jsonify({"error": "missing_fields", "detail": "user_id is required"}), 400

    try:
        result = services.start_campaign(user_id, campaign_id, play_again=bool(payload.get("play_again")))
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code

    return jsonify(result), 201 if result["created"] else 200


@gamemode_bp.get("/campaigns/<campaign_id>/unlock-state")
def unlock_state(campaign_id: str):
    feature_gate.guard()
    user_id = _clean(request.args.get("user_id"))
    if not user_id:
        return jsonify({"error": "missing_fields", "detail": "user_id is required"}), 400

    try:
        result = services.get_unlock_state(
            user_id,
            campaign_id,
            request.args.get("lat"),
            request.args.get("lng"),
        )
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code

    return jsonify(result)


@gamemode_bp.get("/users/<user_id>/progress")
def user_progress(user_id: str):
    feature_gate.guard()
    try:
        result = services.list_user_progress(user_id)
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code
    return jsonify(result)


@gamemode_bp.get("/users/<user_id>/campaigns/<campaign_id>/progress")
def user_campaign_progress(user_id: str, campaign_id: str):
    feature_gate.guard()
    try:
        result = services.get_progress(user_id, campaign_id)
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code
    return jsonify(result)


@gamemode_bp.get("/progress/<progress_id>/markers/<marker_id>/questions")
def marker_questions(progress_id: str, marker_id: str):
    feature_gate.guard()
    try:
        result = services.get_marker_questions(progress_id, _clean(request.args.get("user_id")) or None, marker_id)
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code
    return jsonify(result)


@gamemode_bp.post("/progress/<progress_id>/attempts")
def submit_attempt(progress_id: str):
    feature_gate.guard()
    payload = _json_body()
    user_id = _clean(payload.get("user_id"))
    question_id = _clean(payload.get("question_id"))
    if not user_id or not question_id:
        return jsonify({"error": "missing_fields", "detail": "user_id and question_id are required"}), 400

    try:
        result = services.submit_answer(progress_id, user_id, question_id, payload.get("answer"))
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code

    return jsonify(result), 201


@gamemode_bp.get("/progress/<progress_id>/attempts")
def list_attempts(progress_id: str):
    feature_gate.guard()
    try:
        result = services.list_attempts(progress_id, _clean(request.args.get("user_id")) or None)
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code
    return jsonify(result)


@gamemode_bp.post("/progress/<progress_id>/markers/<marker_id>/complete")
def complete_marker(progress_id: str, marker_id: str):
    feature_gate.guard()
    payload = _json_body()
    user_id = _clean(payload.get("user_id"))
    if not user_id:
        return jsonify({"error": "missing_fields", "detail": "user_id is required"}), 400

    try:
        result = services.complete_marker(progress_id, user_id, marker_id)
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code

    return jsonify(result)


@gamemode_bp.get("/progress/<progress_id>/qrcode")
def progress_qrcode(progress_id: str):
    feature_gate.guard()
    try:
        result = services.issue_qr(progress_id, _clean(request.args.get("user_id")) or None)
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code
    return jsonify(result)


@gamemode_bp.post("/admin/verify")
def admin_verify():
    feature_gate.guard()
    payload = _json_body()
    admin_id = _clean(payload.get("admin_id"))
    token = _clean(payload.get("token"))
    verification_code = _clean(payload.get("verification_code"))
    if not admin_id or not (token or verification_code):
        return (
            jsonify({"error": "missing_fields", "detail": "admin_id and a token or verification_code are required"}),
            400,
        )

    try:
        result = services.verify(admin_id, token=token or None, verification_code=verification_code or None)
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code

    return jsonify(result)


@gamemode_bp.post("/admin/mark-collected")
def admin_mark_collected():
    feature_gate.guard()
    payload = _json_body()
    admin_id = _clean(payload.get("admin_id"))
    progress_id = _clean(payload.get("progress_id"))
    if not admin_id or not progress_id:
        return jsonify({"error": "missing_fields", "detail": "progress_id and admin_id are required"}), 400

    try:
        result = services.mark_points_collected(progress_id, admin_id)
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code

    return jsonify(result)


@gamemode_bp.get("/admin/campaigns/<campaign_id>/progress")
def admin_campaign_progress(campaign_id: str):
    feature_gate.guard()
    try:
        result = services.list_campaign_progress(campaign_id, _clean(request.args.get("admin_id")))
    except services.GameModeError as exc:
        return jsonify(exc.payload), exc.status_code
    return jsonify(result)
