"""Error taxonomy for game-mode operations.

Every failure is an expected, recoverable condition carrying the HTTP status
and JSON payload the blueprint returns verbatim.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GameModeError(Exception):
    """Raised when a game-mode operation fails."""

    status_code = 400
    error_code = "game_mode_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload or {"error": self.error_code, "detail": message}


class ValidationError(GameModeError):
    error_code = "invalid_request"


class NotFound(GameModeError):
    status_code = 404
    error_code = "not_found"


class InvalidTransition(GameModeError):
    status_code = 409
    error_code = "invalid_transition"


class InvalidState(GameModeError):
    status_code = 409
    error_code = "invalid_state"


class AlreadyCollected(GameModeError):
    status_code = 409
    error_code = "already_collected"


class Unauthorized(GameModeError):
    status_code = 403
    error_code = "unauthorized"


class InvalidToken(GameModeError):
    error_code = "invalid_token"


class DataMismatch(GameModeError):
    error_code = "data_mismatch"


class StorageError(GameModeError):
    status_code = 502
    error_code = "storage_error"
