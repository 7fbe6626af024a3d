"""Game-mode progression engine (proximity unlocks, trivia scoring, reward redemption)."""

from .routes import gamemode_bp

__all__ = ["gamemode_bp"]
