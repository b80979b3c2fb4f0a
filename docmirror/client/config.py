"""
docmirror configuration -- all environment variables in one place.

Read from the environment when a Settings object is built; keyword
arguments override the environment. Never hardcode keys.

  DOCMIRROR_SERVER_URL          base url of the REST API
  DOCMIRROR_APPLICATION_ID      sent on every request
  DOCMIRROR_CLIENT_KEY          optional
  DOCMIRROR_MASTER_KEY          optional; only sent when use_master_key is on
  DOCMIRROR_USE_MASTER_KEY      "true"/"1" to send the master key by default
  DOCMIRROR_REQUEST_BATCH_SIZE  objects per batch request (default 20)
  DOCMIRROR_REQUEST_TIMEOUT     seconds (default 30)
  DOCMIRROR_SINGLE_INSTANCE     "false"/"0" for one state per handle
  DOCMIRROR_REQUEST_HEADERS     JSON object of extra headers
"""

from __future__ import annotations

import json
import os
from typing import Any

DEFAULT_SERVER_URL = "http://localhost:1337/parse"
DEFAULT_BATCH_SIZE = 20
DEFAULT_TIMEOUT = 30.0

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_headers(name: str) -> tuple[dict[str, str], str | None]:
    """Parsed headers, plus the raw value when it is not a JSON object."""
    raw = os.environ.get(name, "")
    if not raw:
        return {}, None
    try:
        headers = json.loads(raw)
    except json.JSONDecodeError:
        return {}, raw
    return (headers, None) if isinstance(headers, dict) else ({}, raw)


class Settings:
    """Client settings from environment variables."""

    def __init__(self, **overrides: Any) -> None:
        self.SERVER_URL: str = os.environ.get("DOCMIRROR_SERVER_URL", DEFAULT_SERVER_URL)
        self.APPLICATION_ID: str = os.environ.get("DOCMIRROR_APPLICATION_ID", "")
        self.CLIENT_KEY: str = os.environ.get("DOCMIRROR_CLIENT_KEY", "")
        self.MASTER_KEY: str = os.environ.get("DOCMIRROR_MASTER_KEY", "")
        self.USE_MASTER_KEY: bool = _env_bool("DOCMIRROR_USE_MASTER_KEY", False)
        self.SINGLE_INSTANCE: bool = _env_bool("DOCMIRROR_SINGLE_INSTANCE", True)
        self.REQUEST_HEADERS, self.invalid_request_headers = _env_headers("DOCMIRROR_REQUEST_HEADERS")

        # Numbers are kept raw here and checked in validate().
        self.REQUEST_BATCH_SIZE: Any = os.environ.get("DOCMIRROR_REQUEST_BATCH_SIZE", DEFAULT_BATCH_SIZE)
        self.REQUEST_TIMEOUT: Any = os.environ.get("DOCMIRROR_REQUEST_TIMEOUT", DEFAULT_TIMEOUT)

        for key, value in overrides.items():
            name = key.upper()
            if not hasattr(self, name):
                raise TypeError(f"Unknown setting: {key}")
            setattr(self, name, value)
        if "request_headers" in overrides:
            self.invalid_request_headers = None

        self.REQUEST_BATCH_SIZE = _to_number(self.REQUEST_BATCH_SIZE, int)
        self.REQUEST_TIMEOUT = _to_number(self.REQUEST_TIMEOUT, float)

    @property
    def server_path(self) -> str:
        """Path part of SERVER_URL with a trailing slash, prefixed to paths inside batch requests."""
        rest = self.SERVER_URL.split("://", 1)[-1]
        path = rest[rest.find("/") :] if "/" in rest else "/"
        return path if path.endswith("/") else path + "/"

    def validate(self) -> list[str]:
        """Return a list of problems. Empty list means usable."""
        errors: list[str] = []
        if not self.SERVER_URL.startswith(("http://", "https://")):
            errors.append(f"SERVER_URL must be an http(s) url, got {self.SERVER_URL!r}")
        if not self.APPLICATION_ID:
            errors.append("APPLICATION_ID is required")
        if not isinstance(self.REQUEST_BATCH_SIZE, int) or self.REQUEST_BATCH_SIZE < 1:
            errors.append(f"REQUEST_BATCH_SIZE must be a positive integer, got {self.REQUEST_BATCH_SIZE!r}")
        if not isinstance(self.REQUEST_TIMEOUT, float) or self.REQUEST_TIMEOUT <= 0:
            errors.append(f"REQUEST_TIMEOUT must be a positive number, got {self.REQUEST_TIMEOUT!r}")
        if self.USE_MASTER_KEY and not self.MASTER_KEY:
            errors.append("USE_MASTER_KEY is on but MASTER_KEY is empty")
        if self.invalid_request_headers is not None or not isinstance(self.REQUEST_HEADERS, dict):
            errors.append("REQUEST_HEADERS must be a JSON object")
        return errors


def _to_number(value: Any, kind: type) -> Any:
    if isinstance(value, bool):
        return value
    try:
        return kind(value)
    except (TypeError, ValueError):
        return value
