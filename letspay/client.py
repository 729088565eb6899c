"""LetsPay client facade.

Wires the provider, session manager, escrow orchestrator and onboarding
machine together from ``Settings``:

    async with LetsPay() as app:
        await app.connect()
        print(app.onboarding.state)
        tx_hash = await app.escrow.create_escrow(merchant, "0xA.., 0xB..", "1.5")
"""

import logging
from typing import Optional

from letspay.config import Settings, get_settings
from letspay.escrow.orchestrator import EscrowOrchestrator
from letspay.onboarding.machine import OnboardingMachine
from letspay.provider import HttpProvider, Provider
from letspay.registrar import RegistrarClient
from letspay.session.manager import SessionManager
from letspay.session.state import Session, SessionStore
from letspay.storage import LocalStateStore
from letspay.verification import AttestationEvent, AttestationWatcher, VerificationStatusClient

logger = logging.getLogger(__name__)


class LetsPay:
    """One client instance: a session plus everything derived from it.

    Args:
        settings: Client settings (defaults to ``get_settings()``)
        provider: Signing provider; an ``HttpProvider`` on ``settings.rpc_url``
            is created when omitted
        state_store: Local persisted state (defaults to the settings state dir)

    Raises:
        ValueError: If no ledger contract address is configured
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider: Optional[Provider] = None,
        state_store: Optional[LocalStateStore] = None,
    ):
        self.settings = settings or get_settings()
        if not self.settings.contract_address:
            raise ValueError("LETSPAY_CONTRACT_ADDRESS is not configured")

        self._owns_provider = provider is None
        self.provider = provider or HttpProvider(
            self.settings.rpc_url, timeout=self.settings.http_timeout
        )
        self.store = SessionStore()
        self.state_store = state_store or LocalStateStore(self.settings.resolved_state_dir())

        self.registrar = RegistrarClient(
            self.settings.api_base_url,
            parent_namespace=self.settings.parent_namespace,
            timeout=self.settings.http_timeout,
        )
        self.verification = VerificationStatusClient(
            self.settings.verification_base_url, timeout=self.settings.http_timeout
        )
        self.attestation: Optional[AttestationWatcher] = None
        if self.settings.attestation_rpc_url:
            self.attestation = AttestationWatcher(
                self.settings.attestation_rpc_url,
                self.settings.attestation_address,
                lookback_blocks=self.settings.attestation_lookback_blocks,
                poll_interval=self.settings.attestation_poll_interval,
                http_timeout=self.settings.http_timeout,
            )

        self.sessions = SessionManager(
            self.provider,
            self.store,
            self.state_store,
            self.settings.contract_address,
            self.settings.chain_id,
            poll_interval=self.settings.receipt_poll_interval,
            receipt_timeout=self.settings.receipt_timeout,
        )
        self.escrow = EscrowOrchestrator(self.store, decimals=self.settings.native_decimals)
        self.onboarding = OnboardingMachine(
            self.store, self.registrar, self.verification, self.state_store
        )
        self.sessions.add_establishment_hook(self.onboarding.on_session_established)
        self.sessions.add_establishment_hook(self._refresh_escrow)

    async def _refresh_escrow(self, session: Session) -> None:
        await self.escrow.refresh()

    @property
    def session(self) -> Optional[Session]:
        return self.store.current

    async def start(self) -> Optional[Session]:
        """Listen for provider events and restore a prior session if possible."""
        return await self.sessions.start()

    async def connect(self) -> Session:
        return await self.sessions.connect()

    async def disconnect(self) -> None:
        await self.sessions.disconnect()

    async def watch_attestation(self, timeout: Optional[float] = None) -> Optional[AttestationEvent]:
        """Wait for the attestation event, if an attestation ledger is configured."""
        if self.attestation is None:
            logger.debug("No attestation ledger configured")
            return None
        return await self.onboarding.watch_attestation(self.attestation, timeout=timeout)

    def tx_url(self, tx_hash: str) -> str:
        return self.settings.tx_url(tx_hash)

    async def close(self) -> None:
        self.sessions.stop()
        self.onboarding.close()
        self.escrow.close()
        await self.registrar.aclose()
        await self.verification.aclose()
        if self.attestation is not None:
            await self.attestation.aclose()
        if self._owns_provider and isinstance(self.provider, HttpProvider):
            await self.provider.aclose()

    async def __aenter__(self) -> "LetsPay":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
