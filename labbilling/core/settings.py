"""
Runtime configuration for the billing service.

Values come from environment variables so the same code runs against a
local backend, staging, or production without changes.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class BackendSettings:
    """
    Connection settings for the hosted relational backend.
    """

    url: str = ""
    api_key: str = ""
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    session_file: Optional[str] = None
    cors_allow_origins: List[str] = field(default_factory=lambda: ["*"])

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.url.rstrip('/')}/auth/v1"


def _parse_timeout(raw: Optional[str]) -> float:
    if not raw:
        return DEFAULT_TIMEOUT_SECONDS
    try:
        timeout = float(raw)
    except ValueError as exc:
        raise ValueError(f"BACKEND_TIMEOUT must be a number, got {raw!r}") from exc
    if timeout <= 0:
        raise ValueError("BACKEND_TIMEOUT must be greater than 0")
    return timeout


def load_backend_settings() -> BackendSettings:
    """
    Build settings from the process environment.

    Raises:
        ValueError: If a numeric variable cannot be parsed.
    """
    origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
    return BackendSettings(
        url=os.getenv("BACKEND_URL", ""),
        api_key=os.getenv("BACKEND_API_KEY", ""),
        timeout=_parse_timeout(os.getenv("BACKEND_TIMEOUT")),
        session_file=os.getenv("BACKEND_SESSION_FILE") or None,
        cors_allow_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )


__all__ = ["BackendSettings", "DEFAULT_TIMEOUT_SECONDS", "load_backend_settings"]
