"""Onboarding state machine.

Maps four signals onto exactly one of five states:

    DISCONNECTED -> AWAITING_USERNAME -> AWAITING_VERIFICATION
                 -> AWAITING_SIGNUP -> READY

``derive_state`` is the pure transition rule. ``OnboardingMachine`` owns the
signals for the active session, refreshes them from the registrar, the
verification sources and the ledger, and re-derives the state whenever one
changes.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, List, Optional

from letspay.errors import (
    NotConnectedError,
    RegistrarUnavailable,
    VerificationCheckFailed,
)
from letspay.registrar import RegistrarClient, UsernameRecord, validate_label
from letspay.session.state import Session, SessionStore
from letspay.storage import LocalStateStore
from letspay.verification import AttestationEvent, AttestationWatcher, VerificationStatusClient

logger = logging.getLogger(__name__)

# Marker for "keep the previous value" in refresh results
_KEEP = object()


class OnboardingState(str, Enum):
    """Onboarding steps, in order."""

    DISCONNECTED = "disconnected"
    AWAITING_USERNAME = "awaiting_username"
    AWAITING_VERIFICATION = "awaiting_verification"
    AWAITING_SIGNUP = "awaiting_signup"
    READY = "ready"


@dataclass(frozen=True)
class OnboardingSignals:
    is_connected: bool = False
    has_username: bool = False
    is_verified: bool = False
    is_signed_up: bool = False


def derive_state(signals: OnboardingSignals) -> OnboardingState:
    """Map signals to a state; earlier missing steps take priority."""
    if not signals.is_connected:
        return OnboardingState.DISCONNECTED
    if not signals.has_username:
        return OnboardingState.AWAITING_USERNAME
    if not signals.is_verified:
        return OnboardingState.AWAITING_VERIFICATION
    if not signals.is_signed_up:
        return OnboardingState.AWAITING_SIGNUP
    return OnboardingState.READY


StateCallback = Callable[[OnboardingState], None]


class OnboardingMachine:
    """Tracks onboarding progress for the active session.

    Args:
        store: Session container to follow
        registrar: Name registrar client
        verification: Verification status client, or None to rely on the
            local override and attestation events only
        state_store: Account-scoped local persisted facts
    """

    def __init__(
        self,
        store: SessionStore,
        registrar: RegistrarClient,
        verification: Optional[VerificationStatusClient],
        state_store: LocalStateStore,
    ):
        self.store = store
        self.registrar = registrar
        self.verification = verification
        self.state_store = state_store
        self.last_error: Optional[str] = None
        self._signals = OnboardingSignals()
        self._username: Optional[str] = None
        self._subscribers: List[StateCallback] = []
        self._unsubscribe = store.subscribe(self._on_session_changed)
        self._on_session_changed(store.current)

    # =========================================================================
    # Observation
    # =========================================================================

    @property
    def signals(self) -> OnboardingSignals:
        return self._signals

    @property
    def state(self) -> OnboardingState:
        return derive_state(self._signals)

    @property
    def username(self) -> Optional[str]:
        return self._username

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Register a callback for state changes; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _set_signals(self, signals: OnboardingSignals) -> None:
        previous = self.state
        self._signals = signals
        current = self.state
        if current != previous:
            logger.info(f"Onboarding state: {previous.value} -> {current.value}")
            for callback in list(self._subscribers):
                try:
                    callback(current)
                except Exception as e:
                    logger.error(f"Onboarding subscriber failed: {e}", exc_info=True)

    def _on_session_changed(self, session: Optional[Session]) -> None:
        self.last_error = None
        if session is None:
            self._username = None
            self._set_signals(OnboardingSignals())
            return

        # Seed from the local cache so a returning account does not flash
        # through AWAITING_USERNAME while the registrar is consulted
        cached = self.state_store.load(session.account)
        self._username = cached.username
        self._set_signals(
            OnboardingSignals(
                is_connected=True,
                has_username=bool(cached.username),
                is_verified=cached.verified,
                is_signed_up=False,
            )
        )

    def _require_session(self) -> Session:
        session = self.store.current
        if session is None:
            raise NotConnectedError()
        return session

    # =========================================================================
    # Refresh
    # =========================================================================

    async def on_session_established(self, session: Session) -> None:
        """Establishment hook for ``SessionManager``."""
        await self.refresh()

    async def refresh(self) -> OnboardingState:
        """Re-read every signal for the current session.

        Results that arrive after the session was replaced are discarded.
        """
        session = self.store.current
        if session is None:
            return self.state

        username, verified, signed_up = await asyncio.gather(
            self._resolve_username(session),
            self._resolve_verified(session),
            self._resolve_signed_up(session),
        )
        if not self.store.is_current(session):
            logger.debug(f"Discarding onboarding refresh for {session.account}")
            return self.state

        signals = self._signals
        if username is not _KEEP:
            self._username = username
            self.state_store.set_username(session.account, username)
            signals = replace(signals, has_username=username is not None)
        if verified:
            if not self.state_store.load(session.account).verified:
                self.state_store.set_verified(session.account)
            signals = replace(signals, is_verified=True)
        if signed_up is not _KEEP:
            signals = replace(signals, is_signed_up=signed_up)
        self._set_signals(signals)
        return self.state

    async def _resolve_username(self, session: Session) -> Any:
        try:
            record = await self.registrar.lookup_username(session.account)
        except RegistrarUnavailable as e:
            logger.warning(f"Username lookup failed for {session.account}: {e}")
            if self.store.is_current(session):
                self.last_error = e.message
            return _KEEP
        return record.full_name if record else None

    async def _resolve_verified(self, session: Session) -> bool:
        if self._signals.is_verified or self.state_store.load(session.account).verified:
            return True
        if self.verification is None:
            return False
        try:
            return await self.verification.is_verified(session.account)
        except VerificationCheckFailed as e:
            logger.info(f"Verification status unavailable for {session.account}: {e}")
            return False

    async def _resolve_signed_up(self, session: Session) -> Any:
        try:
            return await session.ledger.is_signed_up(session.account)
        except Exception as e:
            logger.warning(f"Failed to check signup status for {session.account}: {e}")
            return _KEEP

    # =========================================================================
    # Transitions
    # =========================================================================

    async def check_username(self, label: str) -> bool:
        return await self.registrar.check_availability(label)

    async def register_username(self, label: str) -> UsernameRecord:
        """Register a username for the session account.

        Raises:
            NotConnectedError: Without an active session
            InvalidUsernameError: If the label fails validation
            RegistrarUnavailable: If the registrar failed; retry is allowed
        """
        session = self._require_session()
        normalized = validate_label(label)
        try:
            record = await self.registrar.register(normalized, session.account)
        except RegistrarUnavailable as e:
            self.last_error = e.message
            raise

        if self.store.is_current(session):
            self.last_error = None
            self._username = record.full_name
            self.state_store.set_username(session.account, record.full_name)
            self._set_signals(replace(self._signals, has_username=True))
        return record

    def mark_verified(self) -> bool:
        """Record that the session account is verified.

        Returns:
            True if this call changed anything; repeated calls are no-ops
        """
        session = self.store.current
        if session is None:
            return False
        if self._signals.is_verified and self.state_store.load(session.account).verified:
            return False
        self.state_store.set_verified(session.account)
        self._set_signals(replace(self._signals, is_verified=True))
        logger.info(f"Marked {session.account} as verified")
        return True

    async def watch_attestation(
        self, watcher: AttestationWatcher, timeout: Optional[float] = None
    ) -> Optional[AttestationEvent]:
        """Wait for the attestation event and mark the account verified."""
        session = self._require_session()
        try:
            event = await watcher.wait_for_verification(session.account, timeout=timeout)
        except VerificationCheckFailed as e:
            logger.warning(f"Attestation watch failed for {session.account}: {e}")
            return None
        if event is not None and self.store.is_current(session):
            self.mark_verified()
        return event

    async def sign_up(self, orchestrator) -> str:
        """Accept the credit offer, then re-read the sign-up flag."""
        session = self._require_session()
        tx_hash = await orchestrator.sign_up()
        signed_up = await self._resolve_signed_up(session)
        if signed_up is not _KEEP and self.store.is_current(session):
            self._set_signals(replace(self._signals, is_signed_up=signed_up))
        return tx_hash

    def close(self) -> None:
        self._unsubscribe()
