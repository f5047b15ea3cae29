"""
Current-principal sources. The data access layer never reads identity
itself; callers stamp the principal (an email) into the records they write.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class AuthEventKind(StrEnum):
    SIGN_IN = "sign-in"
    SIGN_OUT = "sign-out"


@dataclass(frozen=True)
class AuthEvent:
    kind: AuthEventKind
    principal: Optional[str]


AuthListener = Callable[[AuthEvent], None]


class PrincipalSource(Protocol):
    def current_principal(self) -> Optional[str]:
        ...

    def on_auth_state_changed(self, callback: AuthListener) -> Callable[[], None]:
        ...


class InMemoryPrincipalSource:
    """Principal source driven directly by `sign_in` / `sign_out` calls."""

    def __init__(self, principal: Optional[str] = None):
        self._principal = principal
        self._listeners: list[AuthListener] = []
        self._lock = threading.Lock()

    def current_principal(self) -> Optional[str]:
        return self._principal

    def on_auth_state_changed(self, callback: AuthListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def _emit(self, event: AuthEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)

    def sign_in(self, email: str) -> None:
        self._principal = email
        self._emit(AuthEvent(AuthEventKind.SIGN_IN, email))

    def sign_out(self) -> None:
        if self._principal is None:
            return
        self._principal = None
        self._emit(AuthEvent(AuthEventKind.SIGN_OUT, None))


class FirebasePrincipalSource(InMemoryPrincipalSource):
    """Signs in from a Firebase ID token verified with firebase_admin."""

    def sign_in_with_id_token(self, id_token: str) -> str:
        from firebase_admin import auth

        claims = auth.verify_id_token(id_token)
        email = claims.get("email")
        if not email:
            raise ValueError("ID token carries no email claim")
        logger.info("Signed in %s", email)
        self.sign_in(email)
        return email
