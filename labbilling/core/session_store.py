"""
Storage for the authenticated session (access and refresh tokens).

Tokens live in memory and can optionally be mirrored to a JSON file so a
restarted worker keeps its session.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Optional


logger = logging.getLogger(__name__)


@dataclass
class Session:
    access_token: str
    refresh_token: Optional[str] = None
    user_id: Optional[str] = None


class SessionStore:
    """Holds at most one session; persists it when a file path is configured."""

    def __init__(self, path: Optional[str] = None):
        self._path = path
        self._session: Optional[Session] = None
        if path:
            self._session = self._load()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def save(self, session: Session) -> None:
        self._session = session
        if not self._path:
            return
        with open(self._path, "w", encoding="utf-8") as fh:
            json.dump(asdict(session), fh)

    def clear(self) -> None:
        self._session = None
        if self._path and os.path.exists(self._path):
            os.remove(self._path)

    def _load(self) -> Optional[Session]:
        if not os.path.exists(self._path):
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
            return Session(**payload)
        except (OSError, ValueError, TypeError):
            logger.warning("Ignoring unreadable session file %s", self._path, exc_info=True)
            return None


__all__ = ["Session", "SessionStore"]
