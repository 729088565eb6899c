"""Escrow subsystem for the LetsPay client.

An escrow splits a payment to a merchant between a host (the creator) and
one or more participants, each of whom accepts their share on the ledger.

Modules:
- split.py: Amount parsing, share splitting, request validation
- orchestrator.py: Create/accept/repay flows and balance refreshes
"""

from letspay.escrow.orchestrator import EscrowOrchestrator
from letspay.escrow.split import (
    EscrowRequest,
    build_escrow_request,
    format_amount,
    parse_amount,
    parse_participants,
    split_shares,
)

__all__ = [
    # Splitting
    "EscrowRequest",
    "split_shares",
    "build_escrow_request",
    "parse_amount",
    "format_amount",
    "parse_participants",
    # Orchestration
    "EscrowOrchestrator",
]
