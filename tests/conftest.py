"""
Pytest fixtures and in-memory fakes for LetsPay tests.

FakeLedger simulates the ledger contract by decoding calldata with the same
ABI the client encodes with. FakeProvider wraps it behind the EIP-1193
surface, the way an injected wallet would.
"""

import itertools
from typing import Any, Dict, List, Optional

import pytest
from eth_abi import decode, encode

from letspay.errors import (
    REVERT_SELECTOR,
    USER_REJECTED_REQUEST,
    ProviderRpcError,
    RegistrarUnavailable,
    VerificationCheckFailed,
)
from letspay.ledger.abi import LETSPAY_LEDGER_ABI
from letspay.ledger.client import LedgerClient
from letspay.provider import EventEmitter, hex_chain_id
from letspay.registrar import UsernameRecord
from letspay.session.state import Session, SessionStore
from letspay.storage import LocalStateStore

REQUIRED_CHAIN_ID = 545
OTHER_CHAIN_ID = 1

# Digit-only addresses are their own checksum form
CONTRACT = "0x9000000000000000000000000000000000000009"
HOST = "0x1000000000000000000000000000000000000001"
ALICE = "0x2000000000000000000000000000000000000002"
BOB = "0x3000000000000000000000000000000000000003"
CAROL = "0x4000000000000000000000000000000000000004"
MERCHANT = "0x5000000000000000000000000000000000000005"

ETHER = 10**18
INITIAL_CREDIT = 100 * ETHER


def revert_data(reason: str) -> str:
    """Encode a Solidity ``Error(string)`` revert payload."""
    return REVERT_SELECTOR + encode(["string"], [reason]).hex()


class FakeLedger:
    """In-memory stand-in for the ledger contract."""

    def __init__(self):
        self.credit: Dict[str, int] = {}
        self.signed_up: set = set()
        self.escrows: Dict[int, dict] = {}
        self.pending: Dict[str, List[int]] = {}
        self._ids = itertools.count(1)
        # function name -> revert reason for the next matching write
        self.reverts: Dict[str, str] = {}

    @staticmethod
    def _key(address: str) -> str:
        return address.lower()

    def _decode(self, data: str):
        raw = bytes.fromhex(data[2:])
        selector, payload = raw[:4], raw[4:]
        for fn in LETSPAY_LEDGER_ABI.values():
            if fn.selector == selector:
                args = decode(list(fn.inputs), payload) if fn.inputs else ()
                return fn, args
        raise ProviderRpcError(-32000, "execution reverted: unknown selector")

    def call(self, tx: dict) -> str:
        fn, args = self._decode(tx["data"])
        if fn.name == "credit":
            values = [self.credit.get(self._key(args[0]), 0)]
        elif fn.name == "signedUp":
            values = [self._key(args[0]) in self.signed_up]
        elif fn.name == "getPendingEscrowsFor":
            values = [list(self.pending.get(self._key(args[0]), []))]
        elif fn.name == "escrowDetails":
            escrow = self.escrows.get(args[0])
            if escrow is None:
                raise ProviderRpcError(3, "execution reverted", revert_data("Unknown escrow"))
            values = [
                escrow["host"],
                escrow["merchant"],
                escrow["total"],
                escrow["status"],
                escrow["participants"],
                escrow["shares"],
            ]
        else:
            raise ProviderRpcError(-32000, f"{fn.name} is not a view function")
        return "0x" + encode(list(fn.outputs), values).hex()

    def transact(self, tx: dict) -> None:
        fn, args = self._decode(tx["data"])
        if fn.name in self.reverts:
            reason = self.reverts.pop(fn.name)
            raise ProviderRpcError(3, "execution reverted", revert_data(reason))

        sender = self._key(tx["from"])
        value = int(tx.get("value", "0x0"), 16)
        if fn.name == "signup":
            self.signed_up.add(sender)
            self.credit[sender] = self.credit.get(sender, 0) + INITIAL_CREDIT
        elif fn.name == "createEscrow":
            merchant, participants, shares, total = args
            escrow_id = next(self._ids)
            self.escrows[escrow_id] = {
                "host": tx["from"],
                "merchant": merchant,
                "total": total,
                "status": 0,
                "participants": list(participants),
                "shares": list(shares),
            }
            for participant in participants:
                self.pending.setdefault(self._key(participant), []).append(escrow_id)
            self.credit[sender] = max(0, self.credit.get(sender, 0) - (total - sum(shares)))
        elif fn.name == "accept":
            (escrow_id,) = args
            ids = self.pending.get(sender, [])
            if escrow_id not in ids:
                raise ProviderRpcError(3, "execution reverted", revert_data("Not a participant"))
            ids.remove(escrow_id)
            self.escrows[escrow_id]["status"] = 1
        elif fn.name == "repayCredit":
            self.credit[sender] = self.credit.get(sender, 0) + value


class FakeProvider(EventEmitter):
    """EIP-1193 provider backed by a FakeLedger.

    Args:
        ledger: Contract simulation
        accounts: Accounts the wallet holds
        chain_id: Network the wallet starts on
    """

    def __init__(
        self,
        ledger: Optional[FakeLedger] = None,
        accounts: Optional[List[str]] = None,
        chain_id: int = REQUIRED_CHAIN_ID,
    ):
        super().__init__()
        self.ledger = ledger or FakeLedger()
        self.accounts = list(accounts if accounts is not None else [HOST])
        self.chain_id = chain_id
        self.authorized = False
        self.reject_switch = False
        self.balances: Dict[str, int] = {}
        self.calls: List[tuple] = []
        self.sent: List[dict] = []
        self.receipts: Dict[str, dict] = {}
        self._hashes = itertools.count(1)

    def methods(self) -> List[str]:
        return [method for method, _ in self.calls]

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        params = params or []
        self.calls.append((method, params))

        if method == "eth_requestAccounts":
            self.authorized = True
            return list(self.accounts)
        if method == "eth_accounts":
            return list(self.accounts) if self.authorized else []
        if method == "eth_chainId":
            return hex_chain_id(self.chain_id)
        if method == "wallet_switchEthereumChain":
            if self.reject_switch:
                raise ProviderRpcError(USER_REJECTED_REQUEST, "User rejected the request.")
            self.chain_id = int(params[0]["chainId"], 16)
            return None
        if method == "eth_call":
            return self.ledger.call(params[0])
        if method == "eth_getBalance":
            return hex(self.balances.get(params[0].lower(), 0))
        if method == "eth_sendTransaction":
            tx = params[0]
            self.ledger.transact(tx)
            self.sent.append(tx)
            tx_hash = "0x" + format(next(self._hashes), "064x")
            self.receipts[tx_hash] = {"transactionHash": tx_hash, "status": "0x1"}
            return tx_hash
        if method == "eth_getTransactionReceipt":
            return self.receipts.get(params[0])
        raise ProviderRpcError(-32601, f"Method not found: {method}")


class FakeRegistrar:
    """In-memory registrar with the RegistrarClient surface."""

    def __init__(self, parent_namespace: str = "letspay.eth"):
        self.parent_namespace = parent_namespace
        self.names: Dict[str, str] = {}  # label -> owner
        self.unavailable = False
        self.lookups = 0

    def _check(self):
        if self.unavailable:
            raise RegistrarUnavailable("Registrar unreachable")

    async def check_availability(self, label: str) -> bool:
        self._check()
        return label.strip().lower() not in self.names

    async def register(self, label: str, owner: str) -> UsernameRecord:
        self._check()
        self.names[label] = owner
        return UsernameRecord(label, owner, self.parent_namespace)

    async def lookup_username(self, owner: str) -> Optional[UsernameRecord]:
        self.lookups += 1
        self._check()
        for label, name_owner in self.names.items():
            if name_owner.lower() == owner.lower():
                return UsernameRecord(label, name_owner, self.parent_namespace)
        return None


class FakeVerification:
    """Verification status source with a fixed set of verified accounts."""

    def __init__(self):
        self.verified: set = set()
        self.failing = False
        self.checks = 0

    async def is_verified(self, account: str) -> bool:
        self.checks += 1
        if self.failing:
            raise VerificationCheckFailed("Verification status unavailable")
        return account.lower() in self.verified


def establish(store: SessionStore, provider: FakeProvider, account: str = HOST) -> Session:
    """Put a session for ``account`` into ``store`` without the connect flow."""
    ledger = LedgerClient(provider, CONTRACT, account, REQUIRED_CHAIN_ID, poll_interval=0)
    session = Session(account=account, chain_id=REQUIRED_CHAIN_ID, ledger=ledger)
    store.replace(session)
    return session


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def provider(ledger):
    return FakeProvider(ledger)


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def state_store(tmp_path):
    return LocalStateStore(tmp_path / "state")


@pytest.fixture
def registrar():
    return FakeRegistrar()


@pytest.fixture
def verification():
    return FakeVerification()
