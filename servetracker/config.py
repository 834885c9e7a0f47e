"""Configuration loading for ServeTracker."""

import os
import re
from pathlib import Path

import yaml

from servetracker.models import Config

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_config(config_path: str | Path = "config.yaml") -> Config:
    """Load configuration from YAML file with environment variable substitution.

    Args:
        config_path: Path to the configuration YAML file

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_text = f.read()

    config_data = yaml.safe_load(_substitute_env_vars(raw_text)) or {}
    return Config(**config_data)


def _substitute_env_vars(text: str) -> str:
    """Substitute ${VAR_NAME} with environment variable values.

    Unset variables are left as-is so validation reports them.
    """

    def replace(match: re.Match[str]) -> str:
        value = os.environ.get(match.group(1), "")
        if not value:
            return match.group(0)
        return value

    return _ENV_PATTERN.sub(replace, text)


def get_default_config() -> dict:
    """Return default configuration as a dictionary.

    Used by ``servetracker init-config`` to write a starter config.yaml.
    """
    return {
        "backend": {
            "kind": "appwrite",
            "endpoint": "https://cloud.appwrite.io/v1",
            "project_id": "${APPWRITE_PROJECT_ID}",
            "api_key": "${APPWRITE_API_KEY}",
            "database_id": "serve-tracker-db",
            "clients_collection": "clients",
            "cases_collection": "client_cases",
            "serves_collection": "serve_attempts",
            "documents_collection": "client_documents",
            "bucket_id": "client-documents",
            "email_function_id": "${APPWRITE_EMAIL_FUNCTION_ID}",
            "timeout_seconds": 30,
        },
        "mirror": {
            "db_path": "~/.servetracker/mirror.db",
        },
        "sync": {
            "poll_interval": 5.0,
            "realtime": True,
        },
        "email": {
            "enabled": True,
            "business_email": "info@justlegalsolutions.org",
        },
        "logging": {
            "level": "INFO",
            "format": "json",
        },
    }
