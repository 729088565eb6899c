"""Escrow request construction and share splitting.

All amounts are integers in the ledger's smallest unit. Decimal input is
converted exactly with ``Decimal``; floats are never constructed.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import List, Sequence, Tuple, Union

from eth_utils import is_address, to_checksum_address

from letspay.errors import InvalidAmountError, InvalidEscrowRequestError

NATIVE_DECIMALS = 18


@dataclass(frozen=True)
class EscrowRequest:
    """A proposed multi-party payment before submission.

    The host pays the implicit remainder: ``sum(shares) + host_share == total``.
    """

    merchant: str
    participants: Tuple[str, ...]
    shares: Tuple[int, ...]
    total: int

    @property
    def host_share(self) -> int:
        return self.total - sum(self.shares)


def split_shares(total: int, participant_count: int) -> List[int]:
    """Split ``total`` across the participants and an implicit host.

    Every party is provisionally assigned ``total // (k + 1)``. Any remainder
    is taken off the participants' shares, ``remainder // k`` each, with the
    final ``remainder % k`` taken from the first participant. The host keeps
    whatever the participants do not cover. A share never drops below zero.

    Args:
        total: Amount in smallest units
        participant_count: Number of listed participants (host excluded)

    Returns:
        One share per participant, in order

    Raises:
        InvalidEscrowRequestError: If there are no participants
        InvalidAmountError: If total is negative
    """
    if participant_count < 1:
        raise InvalidEscrowRequestError("An escrow needs at least one participant")
    if total < 0:
        raise InvalidAmountError("Amount must not be negative")

    parties = participant_count + 1
    base = total // parties
    shares = [base] * participant_count

    remainder = total - base * parties
    if remainder > 0:
        reduction = remainder // participant_count
        leftover = remainder % participant_count
        shares = [share - reduction for share in shares]
        if leftover > 0:
            shares[0] -= leftover

    return [max(share, 0) for share in shares]


def parse_amount(text: Union[str, int, Decimal], decimals: int = NATIVE_DECIMALS) -> int:
    """Parse a positive decimal amount into smallest units.

    Raises:
        InvalidAmountError: On non-numeric, non-finite, non-positive or
            over-precise input
    """
    if isinstance(text, bool):
        raise InvalidAmountError(f"Invalid amount: {text!r}")
    raw = text.strip() if isinstance(text, str) else text
    if raw == "":
        raise InvalidAmountError("Please enter an amount")

    with localcontext() as ctx:
        ctx.prec = 100
        try:
            value = Decimal(raw)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmountError(f"Invalid amount: {text!r}")
        if not value.is_finite():
            raise InvalidAmountError(f"Invalid amount: {text!r}")
        if value <= 0:
            raise InvalidAmountError("Amount must be greater than zero")

        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise InvalidAmountError(
                f"Amount has more than {decimals} decimal places: {text!r}"
            )
        return int(scaled)


def format_amount(amount: int, decimals: int = NATIVE_DECIMALS) -> str:
    """Render smallest units as a decimal string (``10**18`` -> ``"1"``)."""
    with localcontext() as ctx:
        ctx.prec = 100
        value = Decimal(amount).scaleb(-decimals)
        text = format(value.normalize(), "f")
    return text


def parse_participants(text: str) -> List[str]:
    """Split a comma-separated participant list, dropping blank entries."""
    return [p.strip() for p in text.split(",") if p.strip()]


def build_escrow_request(
    merchant: str,
    participants: Union[str, Sequence[str]],
    total: int,
) -> EscrowRequest:
    """Validate inputs and compute the share split.

    Raises:
        InvalidEscrowRequestError: On a bad merchant, bad participant, or an
            empty participant list
        InvalidAmountError: If total is not positive
    """
    if isinstance(participants, str):
        participants = parse_participants(participants)
    merchant = (merchant or "").strip()
    if not merchant:
        raise InvalidEscrowRequestError("Please fill all fields")
    if not is_address(merchant):
        raise InvalidEscrowRequestError(f"Invalid merchant address: {merchant}")
    if not participants:
        raise InvalidEscrowRequestError("An escrow needs at least one participant")
    for participant in participants:
        if not is_address(participant):
            raise InvalidEscrowRequestError(f"Invalid participant address: {participant}")
    if total <= 0:
        raise InvalidAmountError("Amount must be greater than zero")

    shares = split_shares(total, len(participants))
    return EscrowRequest(
        merchant=to_checksum_address(merchant),
        participants=tuple(to_checksum_address(p) for p in participants),
        shares=tuple(shares),
        total=total,
    )
