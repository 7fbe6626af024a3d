import os
from pathlib import Path
from typing import Any, Mapping, Optional

from flask import Flask, jsonify

from extensions import db
from gamemode import gamemode_bp


# ====== Feature toggles ======
def _env_flag(name: str, default: bool) -> bool:
    """Parse truthy feature-toggle values from the environment."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default: float, cast=float):
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return cast(value)
    except ValueError:
        print(f"⚠️ Ignoring invalid {name}={value!r}, using {default}")
        return default


USE_GAME_MODE = _env_flag("USE_GAME_MODE", True)  # 🧭 Toggle game-mode endpoints
GAMEMODE_SCORE_REPEAT_ATTEMPTS = _env_flag("GAMEMODE_SCORE_REPEAT_ATTEMPTS", True)
GAMEMODE_PLAY_AGAIN = _env_flag("GAMEMODE_PLAY_AGAIN", True)

# ====== Game-mode tuning ======
GAMEMODE_UNLOCK_RADIUS_M = _env_number("GAMEMODE_UNLOCK_RADIUS_M", 20.0)
GAMEMODE_CODE_MAX_ATTEMPTS = _env_number("GAMEMODE_CODE_MAX_ATTEMPTS", 10, int)
GAMEMODE_COMPLETE_RETRIES = _env_number("GAMEMODE_COMPLETE_RETRIES", 3, int)
GAMEMODE_QR_BOX_SIZE = _env_number("GAMEMODE_QR_BOX_SIZE", 10, int)
GAMEMODE_QR_BORDER = _env_number("GAMEMODE_QR_BORDER", 2, int)
PRODUCTION_URL = os.environ.get("PRODUCTION_URL", "http://localhost:5001")


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.secret_key = os.environ.get("SECRET_KEY") or os.urandom(24)

    data_dir = Path(app.root_path) / "data"
    default_uri = os.environ.get("DATABASE_URL") or f"sqlite:///{data_dir / 'app.db'}"

    if overrides:
        app.config.update(overrides)
    app.config.setdefault("USE_GAME_MODE", USE_GAME_MODE)
    app.config.setdefault("SQLALCHEMY_DATABASE_URI", default_uri)
    app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)
    app.config.setdefault("GAMEMODE_UNLOCK_RADIUS_M", GAMEMODE_UNLOCK_RADIUS_M)
    app.config.setdefault("GAMEMODE_SCORE_REPEAT_ATTEMPTS", GAMEMODE_SCORE_REPEAT_ATTEMPTS)
    app.config.setdefault("GAMEMODE_PLAY_AGAIN", GAMEMODE_PLAY_AGAIN)
    app.config.setdefault("GAMEMODE_CODE_MAX_ATTEMPTS", GAMEMODE_CODE_MAX_ATTEMPTS)
    app.config.setdefault("GAMEMODE_COMPLETE_RETRIES", GAMEMODE_COMPLETE_RETRIES)
    app.config.setdefault("GAMEMODE_QR_BOX_SIZE", GAMEMODE_QR_BOX_SIZE)
    app.config.setdefault("GAMEMODE_QR_BORDER", GAMEMODE_QR_BORDER)
    app.config.setdefault("PRODUCTION_URL", PRODUCTION_URL)

    database_uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if database_uri.startswith("sqlite:///"):
        Path(database_uri[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

    db.init_app(app)
    app.register_blueprint(gamemode_bp)

    @app.errorhandler(404)
    def not_found(err):
        return jsonify({"error": "not_found"}), 404

    @app.errorhandler(500)
    def server_error(err):
        return jsonify({"error": "internal_error"}), 500

    with app.app_context():
        db.create_all()

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)), debug=True)
