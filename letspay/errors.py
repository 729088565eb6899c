"""Error taxonomy for the LetsPay client core.

Every failure the core can surface is a ``LetsPayError`` subclass carrying a
stable ``code`` so callers (UI layers, the CLI) can switch on the variant
without string matching:

- NoProviderError: no signing provider is available
- ChainSwitchRejected: the provider refused to move to the required chain
- WrongNetworkError: a write was attempted on the wrong chain (never sent)
- NotConnectedError: an operation needed a live session
- InvalidAmountError / InvalidEscrowRequestError / InvalidUsernameError:
  local input validation, never reaches the network
- InsufficientBalanceError: pre-flight balance check before a spend
- LedgerCallRejected / EscrowCreationRejected: submission or inclusion failure
- RegistrarUnavailable / RegistrarOwnershipMismatch: registrar failures
- VerificationCheckFailed: verification status could not be determined

Low-level provider failures use the EIP-1193 shape (``ProviderRpcError``);
``extract_failure_reason`` turns any of them into one human-readable reason.
"""

from enum import Enum
from typing import Any, Optional

from eth_abi import decode

# Error(string) selector used by Solidity reverts
REVERT_SELECTOR = "0x08c379a0"

# EIP-1193 / JSON-RPC error codes
USER_REJECTED_REQUEST = 4001
UNRECOGNIZED_CHAIN = 4902
INTERNAL_RPC_ERROR = -32603


class ErrorCode(str, Enum):
    """Stable identifiers for each error variant."""

    NO_PROVIDER = "NO_PROVIDER"
    CHAIN_SWITCH_REJECTED = "CHAIN_SWITCH_REJECTED"
    WRONG_NETWORK = "WRONG_NETWORK"
    NOT_CONNECTED = "NOT_CONNECTED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_ESCROW_REQUEST = "INVALID_ESCROW_REQUEST"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    LEDGER_CALL_REJECTED = "LEDGER_CALL_REJECTED"
    ESCROW_CREATION_REJECTED = "ESCROW_CREATION_REJECTED"
    REGISTRAR_UNAVAILABLE = "REGISTRAR_UNAVAILABLE"
    INVALID_USERNAME = "INVALID_USERNAME"
    VERIFICATION_CHECK_FAILED = "VERIFICATION_CHECK_FAILED"


class LetsPayError(Exception):
    """Base exception for LetsPay client errors."""

    code: ErrorCode = ErrorCode.LEDGER_CALL_REJECTED

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class NoProviderError(LetsPayError):
    """No compatible signing provider is present."""

    code = ErrorCode.NO_PROVIDER

    def __init__(self, message: str = "No wallet provider available"):
        super().__init__(message)


class ChainSwitchRejected(LetsPayError):
    """The provider declined to switch to the required chain."""

    code = ErrorCode.CHAIN_SWITCH_REJECTED


class WrongNetworkError(LetsPayError):
    """A write was blocked because the provider is on another chain."""

    code = ErrorCode.WRONG_NETWORK

    def __init__(self, expected: int, actual: Optional[int]):
        super().__init__(f"Wrong network: expected chain {expected}, provider is on {actual}")
        self.expected = expected
        self.actual = actual


class NotConnectedError(LetsPayError):
    """An operation required a live session."""

    code = ErrorCode.NOT_CONNECTED

    def __init__(self, message: str = "Not connected"):
        super().__init__(message)


class InvalidAmountError(LetsPayError):
    """An amount could not be parsed or was not positive."""

    code = ErrorCode.INVALID_AMOUNT


class InvalidEscrowRequestError(LetsPayError):
    """An escrow request failed local validation."""

    code = ErrorCode.INVALID_ESCROW_REQUEST


class InsufficientBalanceError(LetsPayError):
    """The signer's spendable balance cannot cover the requested amount."""

    code = ErrorCode.INSUFFICIENT_BALANCE

    def __init__(self, required: int, available: int):
        super().__init__("Insufficient balance to repay this amount")
        self.required = required
        self.available = available


class LedgerCallRejected(LetsPayError):
    """A ledger write failed at submission or inclusion."""

    code = ErrorCode.LEDGER_CALL_REJECTED

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class EscrowCreationRejected(LedgerCallRejected):
    """The ledger rejected an escrow creation."""

    code = ErrorCode.ESCROW_CREATION_REJECTED


class RegistrarUnavailable(LetsPayError):
    """The name registrar could not serve the request."""

    code = ErrorCode.REGISTRAR_UNAVAILABLE


class RegistrarOwnershipMismatch(RegistrarUnavailable):
    """The registrar returned a name owned by a different address."""

    def __init__(self, name: str, owner: str, expected: str):
        super().__init__(f"Name '{name}' is owned by {owner}, not {expected}")
        self.name = name
        self.owner = owner
        self.expected = expected


class InvalidUsernameError(LetsPayError):
    """A username label failed local validation."""

    code = ErrorCode.INVALID_USERNAME


class VerificationCheckFailed(LetsPayError):
    """Verification status could not be determined."""

    code = ErrorCode.VERIFICATION_CHECK_FAILED


# =============================================================================
# Provider-level failures
# =============================================================================


class ProviderRpcError(Exception):
    """EIP-1193 provider error: a JSON-RPC error object or transport failure.

    Attributes:
        code: JSON-RPC / EIP-1193 error code
        message: Error message reported by the provider
        data: Optional structured payload (revert data hex or a dict)
    """

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data

    @property
    def reason(self) -> Optional[str]:
        """Decoded Solidity revert reason, if the payload carries one."""
        return decode_revert_reason(self.data)

    @property
    def user_rejected(self) -> bool:
        return self.code == USER_REJECTED_REQUEST


class TransactionReverted(Exception):
    """A mined transaction reported a failure status."""

    def __init__(self, tx_hash: str, reason: Optional[str] = None):
        super().__init__(reason or f"Transaction {tx_hash} reverted")
        self.tx_hash = tx_hash
        self.reason = reason
        self.message = str(self)


def decode_revert_reason(data: Any) -> Optional[str]:
    """Decode an ``Error(string)`` revert payload.

    Accepts the raw hex string or a dict wrapping it under ``data`` (the shape
    most nodes use for ``eth_call`` / ``eth_estimateGas`` reverts).
    """
    if isinstance(data, dict):
        data = data.get("data")
    if not isinstance(data, str) or not data.lower().startswith(REVERT_SELECTOR):
        return None
    try:
        (reason,) = decode(["string"], bytes.fromhex(data[len(REVERT_SELECTOR):]))
    except Exception:
        return None
    return reason or None


def extract_failure_reason(error: BaseException, fallback: str) -> str:
    """Extract the most specific failure reason from an error.

    Preference order:
    1. Structured revert reason (``error.reason``)
    2. Structured error payload message (``error.data["message"]``)
    3. Generic message (``error.message`` or ``str(error)``)
    4. The fallback literal

    Args:
        error: Any exception raised by a provider, ledger, or transport
        fallback: Literal to use when nothing better is available

    Returns:
        A non-empty human-readable reason
    """
    reason = getattr(error, "reason", None)
    if isinstance(reason, str) and reason:
        return reason

    data = getattr(error, "data", None)
    if isinstance(data, dict):
        payload_message = data.get("message")
        if isinstance(payload_message, str) and payload_message:
            return payload_message

    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    if str(error):
        return str(error)

    return fallback
