"""Ledger subsystem for the LetsPay client.

The ledger is a single deployed contract holding credit lines and escrows,
reached over JSON-RPC through the session's provider.

Modules:
- abi.py: Contract call surface and calldata encoding
- client.py: Typed reads/writes and transaction inclusion
"""

from letspay.ledger.abi import LETSPAY_LEDGER_ABI, ContractFunction
from letspay.ledger.client import Escrow, LedgerClient, TransactionHandle

__all__ = [
    # ABI
    "LETSPAY_LEDGER_ABI",
    "ContractFunction",
    # Client
    "LedgerClient",
    "TransactionHandle",
    "Escrow",
]
