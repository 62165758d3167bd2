"""
relay_config.py - Immutable runtime configuration for the OAuth relay.

Values come from the environment (and a local .env file when present).
The resulting RelayConfig is built once at startup and handed to every
component; nothing below the HTTP layer reads os.environ.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from relay_errors import ConfigurationError

logger = logging.getLogger("relay-config")

INSECURE_SESSION_SECRET = "a_very_strong_secret_key_that_should_be_changed"

# env var -> RelayConfig field
_ENV_FIELDS = {
    "APP_ENV": "app_env",
    "PORT": "port",
    "HOST": "host",
    "GITHUB_CLIENT_ID": "github_client_id",
    "GITHUB_CLIENT_SECRET": "github_client_secret",
    "GITHUB_CALLBACK_URL": "github_callback_url",
    "GITHUB_SCOPE": "github_scope",
    "GITHUB_REPO": "github_repo",
    "GITHUB_HTTP_TIMEOUT": "github_http_timeout",
    "FRONTEND_URL": "frontend_url",
    "SESSION_SECRET": "session_secret",
    "RATE_LIMIT_REQUESTS": "rate_limit_requests",
    "RATE_LIMIT_WINDOW_MINUTES": "rate_limit_window_minutes",
    "LOG_LEVEL": "log_level",
    "FORWARDED_ALLOW_IPS": "forwarded_allow_ips",
}
_FIELD_ENVS = {v: k for k, v in _ENV_FIELDS.items()}


def _check_http_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"expected an http(s) URL, got {value!r}")
    return value


class RelayConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    github_client_id: str
    github_client_secret: str
    github_callback_url: str
    github_repo: str
    frontend_url: str

    app_env: str = "development"
    port: int = 3000
    host: str = "0.0.0.0"
    github_scope: str = "repo"
    github_http_timeout: float = 10.0
    session_secret: str = INSECURE_SESSION_SECRET
    rate_limit_requests: int = 100
    rate_limit_window_minutes: int = 60
    log_level: str = "info"
    # Peers whose X-Forwarded-For is honoured; uvicorn's own default.
    forwarded_allow_ips: str = "127.0.0.1"

    @field_validator("github_client_id", "github_client_secret", "session_secret")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("github_callback_url")
    @classmethod
    def _callback_is_url(cls, v: str) -> str:
        return _check_http_url(v)

    @field_validator("frontend_url")
    @classmethod
    def _frontend_is_origin(cls, v: str) -> str:
        # Used verbatim as the postMessage target and the CORS origin.
        return _check_http_url(v).rstrip("/")

    @field_validator("github_repo")
    @classmethod
    def _repo_has_owner(cls, v: str) -> str:
        owner, sep, name = v.partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValueError("expected owner/repo")
        return v

    @field_validator("github_http_timeout")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("rate_limit_requests", "rate_limit_window_minutes", "port")
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.strip().lower()
        level = {"warn": "warning", "fatal": "critical"}.get(level, level)
        if level not in ("critical", "error", "warning", "info", "debug"):
            raise ValueError(f"unknown log level {v!r}")
        return level

    @property
    def repo_owner(self) -> str:
        return self.github_repo.split("/", 1)[0]

    @property
    def repo_name(self) -> str:
        return self.github_repo.split("/", 1)[1]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def rate_limit_window_seconds(self) -> int:
        return self.rate_limit_window_minutes * 60


def load_config(environ: Mapping[str, str] | None = None) -> RelayConfig:
    """Build a RelayConfig from environment variables.

    When ``environ`` is omitted, a ``.env`` file in the working directory is
    loaded first (without overriding real environment variables) and
    ``os.environ`` is used.

    Raises:
        ConfigurationError: a required variable is missing or any value fails
            validation. The message names every offending variable.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    values = {field: environ[env] for env, field in _ENV_FIELDS.items()
              if environ.get(env)}
    try:
        config = RelayConfig(**values)
    except ValidationError as e:
        problems = []
        for err in e.errors():
            field = str(err["loc"][0]) if err["loc"] else "?"
            env = _FIELD_ENVS.get(field, field)
            if err["type"] == "missing":
                problems.append(f"{env}: missing environment variable")
            else:
                problems.append(f"{env}: {err['msg']}")
        raise ConfigurationError("Invalid configuration: " + "; ".join(problems)) from e

    if config.is_production and config.session_secret == INSECURE_SESSION_SECRET:
        logger.warning("SESSION_SECRET is the insecure default in production; "
                       "set a strong random value")
    return config
