"""Shared Flask extensions used by the game-mode blueprint and its storage layer."""

from flask_sqlalchemy import SQLAlchemy

# Bound to the app in create_app(); models and gamemode.storage import it from here.
db = SQLAlchemy()
