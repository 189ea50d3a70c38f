"""
Shared pytest fixtures for backend tests.
Uses a temp-file SQLite database per test for isolation.
"""
import pytest
import sqlite3
import sys
import os

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import auth
import database
from database import TaskStore

SCHEMA = """
    CREATE TABLE tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        text TEXT NOT NULL,
        category TEXT NOT NULL,
        completed INTEGER DEFAULT 0,
        priority TEXT DEFAULT 'Medium',
        due_date TEXT,
        position INTEGER DEFAULT 0,
        created_at TEXT NOT NULL
    );

    CREATE TABLE users (
        id TEXT PRIMARY KEY,
        display_name TEXT,
        email TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE sessions (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE TABLE api_keys (
        user_id TEXT PRIMARY KEY,
        api_key TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
"""


def fake_verify_google_token(token: str, client_id: str) -> dict:
    """Accepts tokens shaped like 'google:<sub>'; anything else is rejected."""
    if not token.startswith("google:"):
        raise ValueError("Token used too late or malformed")
    sub = token.split(":", 1)[1]
    return {
        "iss": "https://accounts.google.com",
        "aud": client_id,
        "sub": sub,
        "name": f"{sub.title()} Dad",
        "email": f"{sub}@example.com",
    }


@pytest.fixture
def test_db(tmp_path):
    """
    Create an isolated test database for each test.
    Uses a temp file (not :memory:) because the store opens new connections per operation.
    """
    db_path = str(tmp_path / "test.db")

    # Create tables directly (skip alembic for tests)
    conn = sqlite3.connect(db_path)
    conn.executescript(SCHEMA)
    conn.commit()
    conn.close()

    yield db_path


@pytest.fixture
def store(test_db):
    task_store = TaskStore(test_db)
    yield task_store
    task_store.close()


@pytest.fixture
def app_client(test_db, monkeypatch):
    """
    Create a test client for the FastAPI app.
    Mocks init_db to skip alembic migrations and Google token verification.
    """
    from fastapi.testclient import TestClient
    import main

    monkeypatch.setenv("GOOGLE_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("DATABASE_PATH", test_db)
    monkeypatch.delenv("BASE_PATH", raising=False)
    monkeypatch.setattr(database, "init_db", lambda _path: None)
    monkeypatch.setattr(auth, "verify_google_token", fake_verify_google_token)

    with TestClient(main.app) as client:
        yield client


def sign_in(client, sub: str = "dad") -> dict:
    """Sign in as `sub` and return the Authorization header for the session."""
    response = client.post("/auth/sign-in", json={"id_token": f"google:{sub}"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def auth_headers(app_client):
    return sign_in(app_client)
