"""Session manager.

Owns the trusted connection to the signing provider:

- ``connect()``: user-initiated; prompts for accounts and a network switch
- ``silent_reconnect()``: startup path; reuses already-authorized accounts
  and never surfaces a failure
- provider events: ``accountsChanged`` and ``chainChanged``
- ``disconnect()``: local teardown only; provider authorization is untouched

A session is established only when the provider reports the required chain
id, and every ledger write re-checks the chain before dispatch.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional

from eth_utils import to_checksum_address

from letspay.errors import (
    ChainSwitchRejected,
    NoProviderError,
    NotConnectedError,
    ProviderRpcError,
    extract_failure_reason,
)
from letspay.ledger.client import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RECEIPT_TIMEOUT,
    LedgerClient,
)
from letspay.provider import (
    ACCOUNTS_CHANGED,
    CHAIN_CHANGED,
    Provider,
    hex_chain_id,
    parse_quantity,
)
from letspay.session.state import Session, SessionStore
from letspay.storage import LocalStateStore

logger = logging.getLogger(__name__)

EstablishmentHook = Callable[[Session], Awaitable[Any]]


class SessionManager:
    """Produces and maintains the single active session.

    Args:
        provider: Signing provider, or None when none is installed
        store: Session container shared with the other components
        state_store: Account-scoped local persisted facts
        contract_address: Ledger contract the session is bound to
        chain_id: Required network id
        poll_interval: Receipt poll interval for the bound ledger client
        receipt_timeout: Receipt wait limit for the bound ledger client
    """

    def __init__(
        self,
        provider: Optional[Provider],
        store: SessionStore,
        state_store: LocalStateStore,
        contract_address: str,
        chain_id: int,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
    ):
        self.provider = provider
        self.store = store
        self.state_store = state_store
        self.contract_address = contract_address
        self.chain_id = chain_id
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout
        self._hooks: List[EstablishmentHook] = []
        self._listening = False
        # Account of the most recent session, kept after the session drops
        self._last_account: Optional[str] = None

    def add_establishment_hook(self, hook: EstablishmentHook) -> None:
        """Run ``hook(session)`` after every session establishment."""
        self._hooks.append(hook)

    # =========================================================================
    # Establishment
    # =========================================================================

    async def _current_chain_id(self) -> Optional[int]:
        try:
            return parse_quantity(await self.provider.request("eth_chainId"))
        except (ProviderRpcError, ValueError) as e:
            logger.warning(f"Could not read provider chain id: {e}")
            return None

    async def _switch_chain(self) -> None:
        await self.provider.request(
            "wallet_switchEthereumChain", [{"chainId": hex_chain_id(self.chain_id)}]
        )

    async def _establish(self, account: str) -> Session:
        account = to_checksum_address(account)
        ledger = LedgerClient(
            self.provider,
            self.contract_address,
            account,
            self.chain_id,
            poll_interval=self.poll_interval,
            receipt_timeout=self.receipt_timeout,
        )
        session = Session(account=account, chain_id=self.chain_id, ledger=ledger)
        self.store.replace(session)
        self._last_account = account
        self.state_store.set_connected(account)
        logger.info(f"Session established for {account} on chain {self.chain_id}")

        for hook in list(self._hooks):
            try:
                await hook(session)
            except Exception as e:
                logger.warning(f"Session establishment hook failed: {e}")
        return session

    async def connect(self) -> Session:
        """Request account access and pin the required chain.

        Returns:
            The established session

        Raises:
            NoProviderError: If no provider is installed
            NotConnectedError: If the provider authorized no account or the
                account request was rejected
            ChainSwitchRejected: If the network switch was declined or the
                provider is still on another chain; no session is set
        """
        if self.provider is None:
            raise NoProviderError()

        try:
            accounts = await self.provider.request("eth_requestAccounts")
        except ProviderRpcError as e:
            reason = extract_failure_reason(e, "Account access rejected")
            logger.info(f"Account request rejected: {reason}")
            raise NotConnectedError(reason) from e
        if not accounts:
            raise NotConnectedError("No account authorized by the provider")

        try:
            await self._switch_chain()
        except ProviderRpcError as e:
            self.store.clear()
            reason = extract_failure_reason(e, "Network switch rejected")
            logger.info(f"Chain switch rejected: {reason}")
            raise ChainSwitchRejected(reason) from e

        current = await self._current_chain_id()
        if current != self.chain_id:
            self.store.clear()
            raise ChainSwitchRejected(
                f"Provider is on chain {current}, expected {self.chain_id}"
            )

        return await self._establish(accounts[0])

    async def silent_reconnect(self) -> Optional[Session]:
        """Restore a session from already-authorized accounts without prompting.

        Every failure is logged and swallowed.
        """
        if self.provider is None:
            logger.debug("No provider; skipping silent reconnect")
            return None

        try:
            accounts = await self.provider.request("eth_accounts")
        except ProviderRpcError as e:
            logger.warning(f"Failed to reconnect wallet: {e}")
            return None
        if not accounts:
            return None

        try:
            await self._switch_chain()
        except ProviderRpcError as e:
            logger.error(f"Failed to switch chain to {hex_chain_id(self.chain_id)}: {e}")

        current = await self._current_chain_id()
        if current != self.chain_id:
            logger.warning(
                f"Not restoring session: provider on chain {current}, expected {self.chain_id}"
            )
            return None

        try:
            return await self._establish(accounts[0])
        except ValueError as e:
            logger.warning(f"Provider returned an invalid account: {e}")
            return None

    # =========================================================================
    # Provider events
    # =========================================================================

    async def on_accounts_changed(self, accounts: Optional[List[str]] = None) -> None:
        if not accounts:
            departing = self.store.current
            self.store.clear()
            account = departing.account if departing is not None else self._last_account
            if account is not None:
                self.state_store.clear(account)
            self._last_account = None
            logger.info("Accounts removed; session torn down")
            return

        session = await self.silent_reconnect()
        current = self.store.current
        if session is None and current is not None and current.account.lower() != accounts[0].lower():
            logger.info(f"Could not restore a session for {accounts[0]}; dropping {current.account}")
            self.store.clear()

    async def on_chain_changed(self, chain_id: Any = None) -> None:
        """Reset in-memory state as a fresh load would, then reconnect silently."""
        logger.info(f"Chain changed to {chain_id}; resetting session")
        self.store.clear()
        await self.silent_reconnect()

    async def disconnect(self) -> None:
        departing = self.store.current
        self.store.clear()
        self._last_account = None
        if departing is not None:
            self.state_store.clear(departing.account)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> Optional[Session]:
        """Attach provider listeners and attempt a silent reconnect."""
        if self.provider is not None and not self._listening:
            self.provider.on(ACCOUNTS_CHANGED, self.on_accounts_changed)
            self.provider.on(CHAIN_CHANGED, self.on_chain_changed)
            self._listening = True
        return await self.silent_reconnect()

    def stop(self) -> None:
        if self.provider is not None and self._listening:
            self.provider.remove_listener(ACCOUNTS_CHANGED, self.on_accounts_changed)
            self.provider.remove_listener(CHAIN_CHANGED, self.on_chain_changed)
            self._listening = False
