"""
Pytest fixtures for the update server tests.
"""
import pytest

from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from update_server import catalog
from update_server.app import app
from update_server.database import build_engine, get_session_factory, init_db
from update_server.ratelimit import LimiterRegistry, get_limiter_registry
from update_server.settings import Settings, get_settings

WEBHOOK_SECRET = "test-webhook-secret"
JWT_SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"
ADMIN_PASSWORD = "correct horse battery staple"
SERVER_URL = "https://updates.example.com"


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so that separate sessions and threads share data."""
    engine = build_engine(f"sqlite:///{tmp_path / 'catalog.sqlite3'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'catalog.sqlite3'}",
        server_url=SERVER_URL,
        upload_dir=str(tmp_path / "uploads"),
        github_webhook_secret=WEBHOOK_SECRET,
        jwt_secret=JWT_SECRET,
        admin_username="admin",
        admin_password=ADMIN_PASSWORD,
    )


@pytest.fixture
def limiter_registry():
    return LimiterRegistry()


@pytest.fixture
def client(settings, session_factory, limiter_registry):
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_limiter_registry] = lambda: limiter_registry
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def plugin(db):
    return catalog.create_plugin(
        db,
        {
            "slug": "my-plugin",
            "name": "My Plugin",
            "description": "Does useful things",
            "author": "Acme",
            "github_owner": "acme",
            "github_repo": "my-plugin",
            "requires_wp": "6.0",
        },
    )


@pytest.fixture
def admin_headers(client):
    resp = client.post(
        "/api/auth/admin/login",
        json={"username": "admin", "password": ADMIN_PASSWORD},
    )
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}
