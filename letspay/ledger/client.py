"""Remote ledger client for the LetsPay contract.

Thin typed wrapper over the provider's JSON-RPC surface:

- Reads go through ``eth_call`` and are decoded with the contract ABI
- Writes go through ``eth_sendTransaction`` from the bound account and
  return a ``TransactionHandle``; state is durable only after ``wait()``

Every write re-checks the provider's chain id first and refuses to dispatch
on a mismatch, so no ledger-mutating call ever leaves for the wrong network.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from eth_utils import to_checksum_address

from letspay.errors import (
    InvalidEscrowRequestError,
    LedgerCallRejected,
    TransactionReverted,
    WrongNetworkError,
)
from letspay.ledger.abi import (
    ACCEPT,
    CREATE_ESCROW,
    CREDIT,
    ESCROW_DETAILS,
    GET_PENDING_ESCROWS_FOR,
    REPAY_CREDIT,
    SIGNED_UP,
    SIGNUP,
    ContractFunction,
)
from letspay.provider import Provider, parse_quantity

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_RECEIPT_TIMEOUT = 120.0


@dataclass(frozen=True)
class Escrow:
    """A submitted escrow as recorded by the ledger (read-only)."""

    id: int
    host: str
    merchant: str
    total: int
    status: int
    participants: tuple
    shares: tuple

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "host": self.host,
            "merchant": self.merchant,
            "total": str(self.total),
            "status": self.status,
            "participants": list(self.participants),
            "shares": [str(s) for s in self.shares],
        }


class TransactionHandle:
    """A submitted transaction awaiting inclusion.

    Args:
        tx_hash: Transaction hash returned by the provider
        provider: Provider used to poll for the receipt
        poll_interval: Seconds between receipt polls
        timeout: Seconds to wait before giving up
    """

    def __init__(
        self,
        tx_hash: str,
        provider: Provider,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_RECEIPT_TIMEOUT,
    ):
        self.hash = tx_hash
        self._provider = provider
        self._poll_interval = poll_interval
        self._timeout = timeout
        self.receipt: Optional[Dict[str, Any]] = None

    async def wait(self) -> Dict[str, Any]:
        """Wait for inclusion and return the receipt.

        Raises:
            TransactionReverted: If the receipt reports a failure status
            LedgerCallRejected: If no receipt appears before the timeout
        """
        if self.receipt is not None:
            return self.receipt

        deadline = time.monotonic() + self._timeout
        while True:
            receipt = await self._provider.request("eth_getTransactionReceipt", [self.hash])
            if receipt:
                break
            if time.monotonic() >= deadline:
                raise LedgerCallRejected(
                    f"Timed out waiting for transaction {self.hash} to be included"
                )
            await asyncio.sleep(self._poll_interval)

        status = receipt.get("status", "0x1")
        if isinstance(status, str):
            status = int(status, 16)
        if status != 1:
            raise TransactionReverted(self.hash, receipt.get("revertReason"))

        self.receipt = receipt
        return receipt


class LedgerClient:
    """Typed client for the LetsPay ledger contract bound to one account.

    Args:
        provider: EIP-1193 provider used for every call
        contract_address: Deployed ledger contract
        account: Signing account for writes (reads may target any account)
        chain_id: Required network id; writes are refused elsewhere
        poll_interval: Seconds between receipt polls
        receipt_timeout: Seconds to wait for inclusion
    """

    def __init__(
        self,
        provider: Provider,
        contract_address: str,
        account: Optional[str],
        chain_id: int,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
    ):
        self.provider = provider
        self.contract_address = to_checksum_address(contract_address)
        self.account = to_checksum_address(account) if account else None
        self.chain_id = chain_id
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout

    # =========================================================================
    # Reads
    # =========================================================================

    async def _call(self, fn: ContractFunction, *args: Any) -> tuple:
        call: Dict[str, Any] = {
            "to": self.contract_address,
            "data": fn.encode_call(*args),
        }
        if self.account:
            call["from"] = self.account
        result = await self.provider.request("eth_call", [call, "latest"])
        return fn.decode_result(result or "0x")

    async def get_credit_of(self, account: str) -> int:
        (amount,) = await self._call(CREDIT, to_checksum_address(account))
        return int(amount)

    async def is_signed_up(self, account: str) -> bool:
        (signed_up,) = await self._call(SIGNED_UP, to_checksum_address(account))
        return bool(signed_up)

    async def get_pending_escrow_ids_for(self, account: str) -> List[int]:
        (ids,) = await self._call(GET_PENDING_ESCROWS_FOR, to_checksum_address(account))
        return [int(i) for i in ids]

    async def get_escrow(self, escrow_id: int) -> Escrow:
        host, merchant, total, status, participants, shares = await self._call(
            ESCROW_DETAILS, int(escrow_id)
        )
        return Escrow(
            id=int(escrow_id),
            host=host,
            merchant=merchant,
            total=int(total),
            status=int(status),
            participants=tuple(participants),
            shares=tuple(int(s) for s in shares),
        )

    async def get_balance(self, account: str) -> int:
        """Native balance of an account in smallest units."""
        balance = await self.provider.request(
            "eth_getBalance", [to_checksum_address(account), "latest"]
        )
        return parse_quantity(balance) if balance is not None else 0

    # =========================================================================
    # Writes
    # =========================================================================

    async def ensure_chain(self) -> None:
        """Refuse to continue unless the provider is on the required chain."""
        try:
            current = parse_quantity(await self.provider.request("eth_chainId"))
        except ValueError:
            current = None
        if current != self.chain_id:
            raise WrongNetworkError(self.chain_id, current)

    async def _send(self, fn: ContractFunction, *args: Any, value: int = 0) -> TransactionHandle:
        if not self.account:
            raise LedgerCallRejected("No signing account bound to ledger client")
        if value and not fn.payable:
            raise ValueError(f"{fn.signature} is not payable")

        await self.ensure_chain()

        tx: Dict[str, Any] = {
            "from": self.account,
            "to": self.contract_address,
            "data": fn.encode_call(*args),
        }
        if value:
            tx["value"] = hex(value)

        tx_hash = await self.provider.request("eth_sendTransaction", [tx])
        logger.info(f"Submitted {fn.name} from {self.account}: {tx_hash}")
        return TransactionHandle(
            tx_hash,
            self.provider,
            poll_interval=self.poll_interval,
            timeout=self.receipt_timeout,
        )

    async def sign_up(self) -> TransactionHandle:
        return await self._send(SIGNUP)

    async def create_escrow(
        self,
        merchant: str,
        participants: Sequence[str],
        shares: Sequence[int],
        total: int,
    ) -> TransactionHandle:
        """Submit an escrow; ``participants`` and ``shares`` must align."""
        if len(participants) != len(shares):
            raise InvalidEscrowRequestError(
                f"participants ({len(participants)}) and shares ({len(shares)}) differ in length"
            )
        return await self._send(
            CREATE_ESCROW,
            to_checksum_address(merchant),
            [to_checksum_address(p) for p in participants],
            [int(s) for s in shares],
            int(total),
        )

    async def accept(self, escrow_id: int) -> TransactionHandle:
        return await self._send(ACCEPT, int(escrow_id))

    async def repay(self, amount: int) -> TransactionHandle:
        return await self._send(REPAY_CREDIT, value=int(amount))
