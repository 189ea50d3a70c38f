"""
Tests for startup configuration: config.py and the configuration-error screen in main.py.
"""
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
import database
from config import load_config
from errors import ConfigError


@pytest.fixture
def clean_env(monkeypatch):
    """No .env lookup and none of our variables set."""
    monkeypatch.setattr(config, "load_dotenv", lambda: None)
    for name in config.ENV_FIELDS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadConfig:

    def test_missing_required(self, clean_env):
        with pytest.raises(ConfigError) as excinfo:
            load_config()
        assert "GOOGLE_CLIENT_ID" in str(excinfo.value)
        assert "DATABASE_PATH" in str(excinfo.value)

    def test_blank_counts_as_missing(self, clean_env):
        clean_env.setenv("GOOGLE_CLIENT_ID", "   ")
        clean_env.setenv("DATABASE_PATH", "tasks.db")

        with pytest.raises(ConfigError, match="GOOGLE_CLIENT_ID"):
            load_config()

    def test_defaults(self, clean_env):
        clean_env.setenv("GOOGLE_CLIENT_ID", "client")
        clean_env.setenv("DATABASE_PATH", "tasks.db")

        loaded = load_config()

        assert loaded.google_client_id == "client"
        assert loaded.database_path == "tasks.db"
        assert loaded.base_path == ""
        assert loaded.anthropic_model == config.DEFAULT_MODEL
        assert loaded.log_level == "INFO"

    @pytest.mark.parametrize("raw, expected", [("/", ""), ("app", "/app"), ("/app/", "/app"), ("/a/b", "/a/b")])
    def test_base_path_normalized(self, clean_env, raw, expected):
        clean_env.setenv("GOOGLE_CLIENT_ID", "client")
        clean_env.setenv("DATABASE_PATH", "tasks.db")
        clean_env.setenv("BASE_PATH", raw)

        assert load_config().base_path == expected

    def test_invalid_log_level(self, clean_env):
        clean_env.setenv("GOOGLE_CLIENT_ID", "client")
        clean_env.setenv("DATABASE_PATH", "tasks.db")
        clean_env.setenv("LOG_LEVEL", "chatty")

        with pytest.raises(ConfigError, match="log_level"):
            load_config()


class TestConfigurationErrorScreen:

    @pytest.fixture
    def broken_client(self, clean_env):
        from fastapi.testclient import TestClient
        import main

        clean_env.setattr(database, "init_db", lambda _path: None)
        with TestClient(main.app) as client:
            yield client

    def test_json_clients_get_503(self, broken_client):
        response = broken_client.get("/tasks")

        assert response.status_code == 503
        assert response.json()["error"] == "configuration"
        assert "GOOGLE_CLIENT_ID" in response.json()["detail"]

    def test_browsers_get_error_page(self, broken_client):
        response = broken_client.get("/", headers={"Accept": "text/html"})

        assert response.status_code == 503
        assert "text/html" in response.headers["content-type"]
        assert "can't start" in response.text

    def test_every_route_blocked(self, broken_client):
        assert broken_client.get("/health").status_code == 503
        assert broken_client.post("/auth/sign-in", json={"id_token": "google:dad"}).status_code == 503
