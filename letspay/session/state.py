"""Session value and its state container.

A ``Session`` is never mutated: establishing a new one (or tearing the
current one down) replaces the value held by ``SessionStore`` and notifies
subscribers. Anything that captured the old value can tell it went stale by
comparing identity with ``store.current``.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from letspay.ledger.client import LedgerClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Session:
    """A live, chain-pinned connection to one signing account."""

    account: str
    chain_id: int
    ledger: LedgerClient


SessionCallback = Callable[[Optional[Session]], None]


class SessionStore:
    """Holds at most one active session and notifies subscribers on change."""

    def __init__(self):
        self._current: Optional[Session] = None
        self._subscribers: List[SessionCallback] = []

    @property
    def current(self) -> Optional[Session]:
        return self._current

    @property
    def is_connected(self) -> bool:
        return self._current is not None

    def is_current(self, session: Optional[Session]) -> bool:
        """True if ``session`` is still the active session."""
        return session is not None and session is self._current

    def replace(self, session: Session) -> None:
        self._current = session
        self._notify()

    def clear(self) -> None:
        if self._current is None:
            return
        self._current = None
        self._notify()

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self._current)
            except Exception as e:
                logger.error(f"Session subscriber failed: {e}", exc_info=True)
