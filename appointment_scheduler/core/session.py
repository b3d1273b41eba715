"""
Identity session passed explicitly to the services that need "who am I".

A session starts out loading. Once the identity provider has answered it holds
either a principal or nothing, and it notifies subscribers whenever that
changes (login, logout).
"""
import logging
from typing import Callable, List, Optional

from ..schemas.user import Principal

logger = logging.getLogger(__name__)

Listener = Callable[[Optional[Principal]], None]


class IdentitySession:
    def __init__(self):
        self._principal: Optional[Principal] = None
        self._loading = True
        self._listeners: List[Listener] = []

    @classmethod
    def for_principal(cls, principal: Principal) -> "IdentitySession":
        session = cls()
        session.sign_in(principal)
        return session

    @property
    def principal(self) -> Optional[Principal]:
        return self._principal

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def is_authenticated(self) -> bool:
        return self._principal is not None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def sign_in(self, principal: Principal):
        self._set(principal)

    def sign_out(self):
        self._set(None)

    def _set(self, principal: Optional[Principal]):
        changed = self._loading or principal != self._principal
        self._principal = principal
        self._loading = False
        if not changed:
            return
        logger.debug(f"Session principal changed to {principal.id if principal else None}")
        for listener in list(self._listeners):
            listener(principal)
