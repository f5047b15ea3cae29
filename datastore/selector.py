"""
Backend selection between Firestore and the local store.
"""

from __future__ import annotations

import logging
import threading
from enum import StrEnum
from typing import Optional

from datastore.config import Settings

logger = logging.getLogger(__name__)


class BackendMode(StrEnum):
    REMOTE_ENABLED = "remote-enabled"
    LOCAL_ONLY = "local-only"


class BackendSelector:
    """
    Holds the backend mode for the process.

    The mode comes from the `use-remote` flag at startup. It can drop to
    local-only during the session (e.g. after the remote runs out of quota)
    but only `reset()` brings the remote back.
    """

    def __init__(self, use_remote: bool):
        self._configured = (
            BackendMode.REMOTE_ENABLED if use_remote else BackendMode.LOCAL_ONLY
        )
        self._mode = self._configured
        self._lock = threading.Lock()
        self.fallback_reason: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackendSelector":
        return cls(use_remote=settings.use_remote)

    @property
    def mode(self) -> BackendMode:
        return self._mode

    @property
    def configured_mode(self) -> BackendMode:
        return self._configured

    @property
    def remote_enabled(self) -> bool:
        return self._mode is BackendMode.REMOTE_ENABLED

    def fall_back_to_local(self, reason: str) -> bool:
        """Switches to local-only. Returns True if the mode actually changed."""
        with self._lock:
            if self._mode is BackendMode.LOCAL_ONLY:
                return False
            self._mode = BackendMode.LOCAL_ONLY
            self.fallback_reason = reason
        logger.warning("Falling back to the local store for this session: %s", reason)
        return True

    def reset(self) -> None:
        with self._lock:
            self._mode = self._configured
            self.fallback_reason = None
        logger.info("Backend mode reset to %s", self._mode)
