"""
LetsPay CLI - read-only helpers around the client core.

Usage:
    letspay split TOTAL PARTICIPANT... [--json]
    letspay status ACCOUNT [--json]
    letspay name-available LABEL
"""

import argparse
import asyncio
import json
import logging
import sys

from eth_utils import is_address, to_checksum_address

from letspay.config import Settings, get_settings
from letspay.errors import InvalidEscrowRequestError, LetsPayError, ProviderRpcError
from letspay.escrow.split import format_amount, parse_amount, split_shares
from letspay.ledger.client import LedgerClient
from letspay.provider import HttpProvider
from letspay.registrar import RegistrarClient
from letspay.verification import VerificationStatusClient

logger = logging.getLogger(__name__)


def cmd_split(args, settings: Settings):
    """Show how a total is split between the host and participants."""
    decimals = settings.native_decimals
    total = parse_amount(args.total, decimals)
    for participant in args.participants:
        if not is_address(participant):
            raise InvalidEscrowRequestError(f"Invalid participant address: {participant}")
    participants = [to_checksum_address(p) for p in args.participants]
    shares = split_shares(total, len(participants))
    host_share = total - sum(shares)

    if args.json:
        print(json.dumps({
            "total": str(total),
            "host_share": str(host_share),
            "shares": [
                {"participant": p, "share": str(s)}
                for p, s in zip(participants, shares)
            ],
        }, indent=2))
        return

    print(f"Total:      {format_amount(total, decimals)}")
    print(f"Host share: {format_amount(host_share, decimals)}")
    print("-" * 40)
    for participant, share in zip(participants, shares):
        print(f"  {participant}  {format_amount(share, decimals)}")


async def _gather_status(account: str, settings: Settings) -> dict:
    status = {"account": account}
    provider = HttpProvider(settings.rpc_url, timeout=settings.http_timeout)
    registrar = RegistrarClient(
        settings.api_base_url, settings.parent_namespace, timeout=settings.http_timeout
    )
    verification = VerificationStatusClient(
        settings.verification_base_url, timeout=settings.http_timeout
    )
    try:
        if settings.contract_address:
            try:
                ledger = LedgerClient(provider, settings.contract_address, None, settings.chain_id)
                status["credit"] = str(await ledger.get_credit_of(account))
                status["signed_up"] = await ledger.is_signed_up(account)
                status["pending_escrows"] = await ledger.get_pending_escrow_ids_for(account)
            except (ProviderRpcError, ValueError) as e:
                logger.warning(f"Ledger read failed: {e}")
                status["ledger_error"] = str(e)
        else:
            status["ledger_error"] = "LETSPAY_CONTRACT_ADDRESS is not configured"

        try:
            record = await registrar.lookup_username(account)
            status["username"] = record.full_name if record else None
        except LetsPayError as e:
            status["username_error"] = e.message

        try:
            status["verified"] = await verification.is_verified(account)
        except LetsPayError as e:
            status["verified_error"] = e.message
    finally:
        await provider.aclose()
        await registrar.aclose()
        await verification.aclose()
    return status


def cmd_status(args, settings: Settings):
    """Show ledger, registrar and verification status for an account."""
    status = asyncio.run(_gather_status(args.account, settings))

    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return

    print(f"LetsPay status for {status['account']}")
    print("=" * 40)
    if "ledger_error" in status:
        print(f"Ledger:     unavailable ({status['ledger_error']})")
    else:
        print(f"Credit:     {format_amount(int(status['credit']), settings.native_decimals)}")
        print(f"Signed up:  {'Yes' if status['signed_up'] else 'No'}")
        pending = status["pending_escrows"]
        print(f"Pending:    {', '.join(str(i) for i in pending) if pending else 'none'}")
    if "username_error" in status:
        print(f"Username:   unavailable ({status['username_error']})")
    else:
        print(f"Username:   {status['username'] or 'none'}")
    if "verified_error" in status:
        print(f"Verified:   unavailable ({status['verified_error']})")
    else:
        print(f"Verified:   {'Yes' if status['verified'] else 'No'}")


async def _check_name(label: str, settings: Settings) -> bool:
    registrar = RegistrarClient(
        settings.api_base_url, settings.parent_namespace, timeout=settings.http_timeout
    )
    try:
        return await registrar.check_availability(label)
    finally:
        await registrar.aclose()


def cmd_name_available(args, settings: Settings):
    """Check whether a username is free."""
    available = asyncio.run(_check_name(args.label, settings))
    name = f"{args.label.strip().lower()}.{settings.parent_namespace}"
    print(f"{name} is {'available' if available else 'taken'}")
    if not available:
        sys.exit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="letspay",
        description="Shared escrow payments against a revolving credit line",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at INFO level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # split
    p_split = subparsers.add_parser("split", help="Show an escrow share split")
    p_split.add_argument("total", help="Total amount in native units (e.g. 1.5)")
    p_split.add_argument("participants", nargs="+", help="Participant addresses")
    p_split.add_argument("--json", "-j", action="store_true")

    # status
    p_status = subparsers.add_parser("status", help="Show account status")
    p_status.add_argument("account", help="Account address")
    p_status.add_argument("--json", "-j", action="store_true")

    # name-available
    p_name = subparsers.add_parser("name-available", help="Check username availability")
    p_name.add_argument("label", help="Username label")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    try:
        settings = get_settings()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        if args.command == "split":
            cmd_split(args, settings)
        elif args.command == "status":
            cmd_status(args, settings)
        elif args.command == "name-available":
            cmd_name_available(args, settings)
    except LetsPayError as e:
        logger.error(f"{e.code.value}: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
