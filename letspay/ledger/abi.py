"""Call surface of the LetsPay ledger contract.

Each function is described by its argument and return types; calldata is
built with ``eth_abi`` and the 4-byte selector of the canonical signature.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector


@dataclass(frozen=True)
class ContractFunction:
    """One contract function: name, argument types, return types."""

    name: str
    inputs: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()
    payable: bool = False
    selector: bytes = field(init=False, repr=False)

    def __post_init__(self):
        object.__setattr__(
            self, "selector", function_signature_to_4byte_selector(self.signature)
        )

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    def encode_call(self, *args: Any) -> str:
        """Encode calldata as a 0x-prefixed hex string."""
        if len(args) != len(self.inputs):
            raise ValueError(
                f"{self.signature} takes {len(self.inputs)} arguments, got {len(args)}"
            )
        payload = encode(list(self.inputs), list(args)) if self.inputs else b""
        return "0x" + (self.selector + payload).hex()

    def decode_result(self, data: str) -> Tuple[Any, ...]:
        """Decode a hex-encoded return value."""
        raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        return decode(list(self.outputs), raw)


SIGNUP = ContractFunction("signup")
CREATE_ESCROW = ContractFunction(
    "createEscrow",
    inputs=("address", "address[]", "uint256[]", "uint256"),
    outputs=("uint256",),
)
ACCEPT = ContractFunction("accept", inputs=("uint256",))
REPAY_CREDIT = ContractFunction("repayCredit", payable=True)
GET_PENDING_ESCROWS_FOR = ContractFunction(
    "getPendingEscrowsFor", inputs=("address",), outputs=("uint256[]",)
)
ESCROW_DETAILS = ContractFunction(
    "escrowDetails",
    inputs=("uint256",),
    outputs=("address", "address", "uint256", "uint8", "address[]", "uint256[]"),
)
CREDIT = ContractFunction("credit", inputs=("address",), outputs=("uint256",))
SIGNED_UP = ContractFunction("signedUp", inputs=("address",), outputs=("bool",))

LETSPAY_LEDGER_ABI: Dict[str, ContractFunction] = {
    fn.name: fn
    for fn in (
        SIGNUP,
        CREATE_ESCROW,
        ACCEPT,
        REPAY_CREDIT,
        GET_PENDING_ESCROWS_FOR,
        ESCROW_DETAILS,
        CREDIT,
        SIGNED_UP,
    )
}
