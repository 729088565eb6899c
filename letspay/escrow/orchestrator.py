"""Escrow orchestrator.

Turns user payment intents into ledger writes and keeps the derived credit
balance and pending-escrow list fresh. Within each write the order is fixed:
submit, wait for inclusion, then refresh. Refreshes are swallow-and-log;
write failures surface as typed errors carrying a human-readable reason.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Union

from letspay.errors import (
    EscrowCreationRejected,
    InsufficientBalanceError,
    LedgerCallRejected,
    NotConnectedError,
    ProviderRpcError,
    TransactionReverted,
    extract_failure_reason,
)
from letspay.escrow.split import NATIVE_DECIMALS, build_escrow_request, parse_amount
from letspay.ledger.client import Escrow, TransactionHandle
from letspay.session.state import Session, SessionStore

logger = logging.getLogger(__name__)

# Failures raised while submitting or waiting on a ledger write
_WRITE_ERRORS = (ProviderRpcError, TransactionReverted, LedgerCallRejected)


class EscrowOrchestrator:
    """Escrow, credit and repayment operations for the active session.

    Args:
        store: Session container; operations act on ``store.current``
        decimals: Decimal places of the native currency
    """

    def __init__(self, store: SessionStore, decimals: int = NATIVE_DECIMALS):
        self.store = store
        self.decimals = decimals
        self.credit: Optional[int] = None
        self.pending: List[int] = []
        self._accepting: Dict[int, "asyncio.Task[str]"] = {}
        self._unsubscribe = store.subscribe(self._on_session_changed)

    def _on_session_changed(self, session: Optional[Session]) -> None:
        # Credit and pending lists are never carried across sessions
        self.credit = None
        self.pending = []

    def _require_session(self) -> Session:
        session = self.store.current
        if session is None:
            raise NotConnectedError()
        return session

    async def _submit(self, handle_coro, fallback: str, error_cls=LedgerCallRejected) -> TransactionHandle:
        try:
            handle = await handle_coro
            await handle.wait()
        except _WRITE_ERRORS as e:
            reason = extract_failure_reason(e, fallback)
            logger.warning(f"{fallback}: {reason}")
            raise error_cls(reason) from e
        return handle

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_escrow(
        self,
        merchant: str,
        participants: Union[str, Sequence[str]],
        total_text: str,
    ) -> str:
        """Split, submit and confirm a new escrow.

        Args:
            merchant: Merchant address
            participants: Participant addresses, or a comma-separated string
            total_text: Total as a decimal string in native units

        Returns:
            The inclusion transaction hash

        Raises:
            NotConnectedError: Without an active session
            InvalidAmountError: If the total is not a positive amount
            InvalidEscrowRequestError: On bad addresses or no participants
            WrongNetworkError: If the provider left the required chain
            EscrowCreationRejected: If the ledger refused the escrow
        """
        session = self._require_session()
        total = parse_amount(total_text, self.decimals)
        request = build_escrow_request(merchant, participants, total)

        logger.info(
            f"Creating escrow: total={request.total} participants={len(request.participants)} "
            f"host_share={request.host_share}"
        )
        handle = await self._submit(
            session.ledger.create_escrow(
                request.merchant, list(request.participants), list(request.shares), request.total
            ),
            "Failed to create escrow",
            EscrowCreationRejected,
        )
        await self.refresh()
        return handle.hash

    def is_accepting(self, escrow_id: int) -> bool:
        """True while an accept for ``escrow_id`` is in flight."""
        return int(escrow_id) in self._accepting

    async def accept_escrow(self, escrow_id: int) -> str:
        """Accept one escrow.

        Accepts for different ids run independently. A second call for an id
        that is already in flight joins the running call.

        Returns:
            The inclusion transaction hash
        """
        escrow_id = int(escrow_id)
        in_flight = self._accepting.get(escrow_id)
        if in_flight is not None:
            return await in_flight

        session = self._require_session()
        task = asyncio.ensure_future(self._accept(session, escrow_id))
        self._accepting[escrow_id] = task
        try:
            return await task
        finally:
            if self._accepting.get(escrow_id) is task:
                del self._accepting[escrow_id]

    async def _accept(self, session: Session, escrow_id: int) -> str:
        handle = await self._submit(session.ledger.accept(escrow_id), "Failed to accept escrow")
        await self.refresh()
        return handle.hash

    async def repay(self, amount_text: str) -> str:
        """Repay credit with native currency.

        Raises:
            NotConnectedError: Without an active session
            InvalidAmountError: If the amount is not positive
            InsufficientBalanceError: If the balance cannot cover the amount
            LedgerCallRejected: If the repayment failed
        """
        session = self._require_session()
        amount = parse_amount(amount_text, self.decimals)

        try:
            balance = await session.ledger.get_balance(session.account)
        except ProviderRpcError as e:
            raise LedgerCallRejected(extract_failure_reason(e, "Failed to repay bill")) from e
        if balance < amount:
            raise InsufficientBalanceError(amount, balance)

        handle = await self._submit(session.ledger.repay(amount), "Failed to repay bill")
        await self.refresh_credit()
        return handle.hash

    async def sign_up(self) -> str:
        """Accept the initial credit offer for the session account."""
        session = self._require_session()
        handle = await self._submit(session.ledger.sign_up(), "Failed to sign up")
        await self.refresh_credit()
        return handle.hash

    # =========================================================================
    # Refreshes
    # =========================================================================

    async def refresh_credit(self) -> Optional[int]:
        session = self.store.current
        if session is None:
            return None
        try:
            credit = await session.ledger.get_credit_of(session.account)
        except Exception as e:
            logger.warning(f"Failed to load credit for {session.account}: {e}")
            return self.credit
        if not self.store.is_current(session):
            logger.debug("Discarding credit read for a replaced session")
            return self.credit
        self.credit = credit
        return credit

    async def refresh_pending(self) -> List[int]:
        session = self.store.current
        if session is None:
            return []
        try:
            pending = await session.ledger.get_pending_escrow_ids_for(session.account)
        except Exception as e:
            logger.warning(f"Failed to load pending escrows for {session.account}: {e}")
            return list(self.pending)
        if not self.store.is_current(session):
            logger.debug("Discarding pending read for a replaced session")
            return list(self.pending)
        self.pending = pending
        return list(pending)

    async def refresh(self) -> None:
        """Refresh credit and pending escrows concurrently."""
        await asyncio.gather(self.refresh_credit(), self.refresh_pending())

    async def pending_details(self) -> List[Escrow]:
        """Escrow details for every pending id; unreadable ids are skipped."""
        session = self.store.current
        if session is None:
            return []
        ids = list(self.pending)
        results = await asyncio.gather(
            *(session.ledger.get_escrow(escrow_id) for escrow_id in ids),
            return_exceptions=True,
        )
        details = []
        for escrow_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to load escrow {escrow_id}: {result}")
                continue
            details.append(result)
        return details

    def close(self) -> None:
        self._unsubscribe()
