"""Startup configuration read from the environment (and `.env`)."""
import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

from errors import ConfigError

DEFAULT_ALLOWED_ORIGINS = "http://localhost:5173"
DEFAULT_MODEL = "claude-sonnet-4-5"

# Environment variable -> AppConfig field
ENV_FIELDS = {
    "GOOGLE_CLIENT_ID": "google_client_id",
    "DATABASE_PATH": "database_path",
    "BASE_PATH": "base_path",
    "ANTHROPIC_MODEL": "anthropic_model",
    "LOG_LEVEL": "log_level",
}
REQUIRED_ENV = ("GOOGLE_CLIENT_ID", "DATABASE_PATH")


class AppConfig(BaseModel):
    google_client_id: str
    database_path: str
    base_path: str = ""
    anthropic_model: str = DEFAULT_MODEL
    log_level: str = "INFO"

    @field_validator("base_path")
    @classmethod
    def normalize_base_path(cls, value: str) -> str:
        # "/app/" and "app" both mean "/app"; "/" means no prefix
        value = value.strip().strip("/")
        return f"/{value}" if value else ""

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level '{value}'")
        return level


def load_config() -> AppConfig:
    """
    Build the app config from environment variables.
    Raises ConfigError naming every missing or invalid setting.
    """
    load_dotenv()

    missing = [name for name in REQUIRED_ENV if not os.getenv(name, "").strip()]
    if missing:
        raise ConfigError(
            f"Missing required configuration: {', '.join(missing)}. "
            "Set them in the environment or in a .env file."
        )

    values = {
        field: os.environ[name].strip()
        for name, field in ENV_FIELDS.items()
        if os.getenv(name, "").strip()
    }
    try:
        return AppConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{error['loc'][0]}: {error['msg']}" for error in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e
