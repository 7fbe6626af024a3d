import pytest

from app import create_app
from extensions import db
from gamemode import storage
from gamemode.campaign_tool import SAMPLE_CAMPAIGN_PATH, load_campaign_file
from gamemode.graph import graph_from_payload
from models import User


@pytest.fixture
def sample_payload():
    """The bundled Chinatown campaign as a fresh dict."""
    return load_campaign_file(SAMPLE_CAMPAIGN_PATH)


@pytest.fixture
def sample_graph(sample_payload):
    """Graph built straight from the JSON file, no database involved."""
    return graph_from_payload(sample_payload)


@pytest.fixture
def app(tmp_path, sample_payload):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test_gamemode.db'}",
            "PRODUCTION_URL": "https://trails.example",
        }
    )
    with app.app_context():
        db.session.add_all(
            [
                User(id="user-player", username="player", email="player@example.com"),
                User(id="user-other", username="other", email="other@example.com"),
                User(id="user-admin", username="curator", email="curator@example.com", role=User.ROLE_ADMIN),
            ]
        )
        db.session.commit()
        storage.import_campaign(sample_payload)

    yield app

    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()
