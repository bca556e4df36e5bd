# notifeed/security/credentials.py
from typing import Callable, List, Optional

import structlog

from notifeed.security.jwt_utils import inspect_token, is_expired

logger = structlog.get_logger(__name__)

CredentialObserver = Callable[[Optional[str]], None]


class CredentialStore:
    """
    Holds the bearer token handed over by the session layer.
    Token refresh happens elsewhere; this slot only says whether a
    usable token exists right now and tells observers when it changes.
    """

    def __init__(self):
        self._token: Optional[str] = None
        self._claims: dict = {}
        self._observers: List[CredentialObserver] = []

    def set(self, token: str) -> dict:
        claims = inspect_token(token)
        self._token = token
        self._claims = claims
        logger.info("credential_set", subject=str(claims.get("sub")))
        self._notify()
        return claims

    def clear(self) -> None:
        if self._token is None:
            return
        self._token = None
        self._claims = {}
        logger.info("credential_cleared")
        self._notify()

    def usable(self) -> bool:
        return self._token is not None and not is_expired(self._claims)

    def current(self) -> Optional[str]:
        return self._token if self.usable() else None

    @property
    def subject(self) -> Optional[str]:
        sub = self._claims.get("sub")
        return str(sub) if sub is not None else None

    def observe(self, observer: CredentialObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _remove():
            if observer in self._observers:
                self._observers.remove(observer)

        return _remove

    def _notify(self) -> None:
        token = self.current()
        for observer in list(self._observers):
            observer(token)
