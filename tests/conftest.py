"""
Pytest fixtures for the club portal test suite.

Provides:
- A PortalStore over a throwaway SQLite file
- A Flask test client on the same file (CSRF off)
- Member / log factories and sign-up helpers
"""

import pytest

from app import create_app
from portal_store import new_id, open_store
from settings import Settings
from sheets import BlobStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        secret_key="test-secret",
        data_dir=str(tmp_path / "data"),
        csrf_enabled=False,
        login_max_attempts=3,
    )


@pytest.fixture
def store(settings):
    portal = open_store(settings)
    portal.init_schema()
    yield portal
    portal.close()


@pytest.fixture
def blobs(settings):
    return BlobStore(settings.blob_dir)


@pytest.fixture
def make_member(store):
    def _make(member_id=None, **fields):
        member_id = member_id or new_id()
        store.batch().set("members", member_id, fields).commit()
        return store.get_member(member_id)
    return _make


@pytest.fixture
def make_log(store):
    def _make(member_id, date="2025-11-15", hours=2, activity="Agility trial", status="approved", **fields):
        log_id = fields.pop("log_id", None) or new_id()
        data = {
            "member_id": member_id,
            "date": date,
            "hours": hours,
            "activity": activity,
            "status": status,
        }
        data.update(fields)
        store.batch().set("logs", log_id, data).commit()
        return store.get_log(log_id)
    return _make


# =============================================================================
# Web app
# =============================================================================


@pytest.fixture
def app(settings):
    flask_app = create_app(settings)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def signup():
    def _signup(client, email="member@example.com", password="Passw0rd"):
        resp = client.post("/auth/signup", json={"email": email, "password": password})
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()["member"]
    return _signup


@pytest.fixture
def admin_client(app, store, signup):
    admin = app.test_client()
    member = signup(admin, "admin@example.com")
    store.batch().set("members", member["id"], {"role": "admin"}, merge=True).commit()
    return admin
