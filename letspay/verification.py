"""Verification status sources.

Two independent channels report the same fact, "this account passed KYC":

1. ``VerificationStatusClient`` polls the verification backend
   (``GET /verification-status/{account}`` -> ``{"verified": bool}``)
2. ``AttestationWatcher`` reads the attestation ledger's ``UserVerified``
   event log, keyed by the account's indexed topic

Either one is enough; the onboarding machine feeds both into a single
idempotent ``mark_verified`` transition.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional
from urllib.parse import quote

import httpx
from eth_abi import decode
from eth_utils import keccak
from pydantic import BaseModel, ValidationError

from letspay.errors import VerificationCheckFailed

logger = logging.getLogger(__name__)

# UserVerified(address indexed user, bytes32 indexed userIdentifier, string nationality, uint256 timestamp)
USER_VERIFIED_SIGNATURE = "UserVerified(address,bytes32,string,uint256)"
USER_VERIFIED_TOPIC = "0x" + keccak(text=USER_VERIFIED_SIGNATURE).hex()

DEFAULT_LOOKBACK_BLOCKS = 5000
DEFAULT_POLL_INTERVAL = 5.0


class _StatusResponse(BaseModel):
    verified: bool = False


class VerificationStatusClient:
    """Polls the verification backend for an account's status.

    Args:
        base_url: Verification service base URL
        timeout: Request timeout in seconds
        client: Optional pre-configured ``httpx.AsyncClient``
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def is_verified(self, account: str) -> bool:
        """Ask the backend whether ``account`` is verified.

        Raises:
            VerificationCheckFailed: On transport errors, non-2xx responses,
                or a malformed body
        """
        url = f"{self.base_url}/verification-status/{quote(account, safe='')}"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            return _StatusResponse.model_validate(response.json()).verified
        except httpx.HTTPStatusError as e:
            raise VerificationCheckFailed(
                f"Verification status returned HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise VerificationCheckFailed(f"Verification status unavailable: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# Attestation ledger
# =============================================================================


@dataclass(frozen=True)
class AttestationEvent:
    """A decoded ``UserVerified`` log entry."""

    user: str
    user_identifier: str
    nationality: str
    timestamp: datetime
    block_number: int
    tx_hash: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "user": self.user,
            "user_identifier": self.user_identifier,
            "nationality": self.nationality,
            "timestamp": self.timestamp.isoformat(),
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
        }


def _normalize_address(address: str) -> str:
    """Lowercase an address, unpadding a 32-byte log topic if needed."""
    if not address:
        return ""
    address = address.lower()
    if not address.startswith("0x"):
        address = "0x" + address
    if len(address) == 66:
        address = "0x" + address[-40:]
    return address


def account_topic(account: str) -> str:
    """32-byte indexed topic for an address."""
    return "0x" + _normalize_address(account)[2:].rjust(64, "0")


def _parse_quantity(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def _parse_user_verified_log(log: dict) -> Optional[AttestationEvent]:
    """Parse a ``UserVerified`` log.

    - topics[0]: event signature
    - topics[1]: user address (indexed, padded to 32 bytes)
    - topics[2]: user identifier (indexed bytes32)
    - data: (string nationality, uint256 timestamp)
    """
    topics = log.get("topics", [])
    if len(topics) < 3 or topics[0].lower() != USER_VERIFIED_TOPIC:
        return None

    data = log.get("data", "0x")
    try:
        nationality, timestamp = decode(
            ["string", "uint256"], bytes.fromhex(data[2:] if data.startswith("0x") else data)
        )
        verified_at = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except Exception as e:
        logger.debug(f"Skipping undecodable UserVerified log: {e}")
        return None

    return AttestationEvent(
        user=_normalize_address(topics[1]),
        user_identifier=topics[2].lower(),
        nationality=nationality,
        timestamp=verified_at,
        block_number=_parse_quantity(log.get("blockNumber", "0x0")),
        tx_hash=log.get("transactionHash"),
    )


class AttestationWatcher:
    """Reads ``UserVerified`` events from the attestation ledger.

    Args:
        rpc_url: JSON-RPC endpoint of the attestation ledger
        attestation_address: Contract emitting ``UserVerified``
        lookback_blocks: How far back history queries reach
        poll_interval: Seconds between polls for new blocks
        timeout: Default wait limit for ``wait_for_verification`` (None waits forever)
        client: Optional pre-configured ``httpx.AsyncClient``
    """

    def __init__(
        self,
        rpc_url: str,
        attestation_address: str,
        lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 30.0,
    ):
        self.rpc_url = rpc_url
        self.attestation_address = _normalize_address(attestation_address)
        self.lookback_blocks = lookback_blocks
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=http_timeout)
        self._ids = itertools.count(1)

    async def _rpc_call(self, method: str, params: list) -> Any:
        """Make a JSON-RPC call to the attestation ledger."""
        try:
            response = await self._client.post(
                self.rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "method": method,
                    "params": params,
                    "id": next(self._ids),
                },
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise VerificationCheckFailed(f"Attestation RPC failed: {e}") from e

        if "error" in result:
            raise VerificationCheckFailed(f"Attestation RPC error: {result['error']}")
        return result.get("result")

    async def _latest_block(self) -> int:
        return _parse_quantity(await self._rpc_call("eth_blockNumber", []))

    async def _get_events(self, account: str, from_block: int, to_block: int) -> List[AttestationEvent]:
        logs = await self._rpc_call(
            "eth_getLogs",
            [
                {
                    "address": self.attestation_address,
                    "topics": [USER_VERIFIED_TOPIC, account_topic(account)],
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                }
            ],
        )
        events = []
        for log in logs or []:
            event = _parse_user_verified_log(log)
            if event and event.user == _normalize_address(account):
                events.append(event)
        return events

    async def find_verification(self, account: str) -> Optional[AttestationEvent]:
        """Most recent ``UserVerified`` event for ``account`` within the lookback window."""
        latest = await self._latest_block()
        events = await self._get_events(
            account, max(0, latest - self.lookback_blocks), latest
        )
        if not events:
            return None
        return max(events, key=lambda e: e.block_number)

    async def wait_for_verification(
        self, account: str, timeout: Optional[float] = None
    ) -> Optional[AttestationEvent]:
        """Wait until a ``UserVerified`` event appears for ``account``.

        History is checked first, then new blocks are polled.

        Returns:
            The event, or None if the timeout elapsed first

        Raises:
            VerificationCheckFailed: If the attestation ledger cannot be read
        """
        if timeout is None:
            timeout = self.timeout
        deadline = time.monotonic() + timeout if timeout is not None else None

        latest = await self._latest_block()
        events = await self._get_events(
            account, max(0, latest - self.lookback_blocks), latest
        )
        last_checked = latest

        while not events:
            if deadline is not None and time.monotonic() >= deadline:
                logger.info(f"No attestation seen for {account} before timeout")
                return None
            await asyncio.sleep(self.poll_interval)
            latest = await self._latest_block()
            if latest > last_checked:
                events = await self._get_events(account, last_checked + 1, latest)
                last_checked = latest

        event = max(events, key=lambda e: e.block_number)
        logger.info(f"Attestation for {account} found in block {event.block_number}")
        return event

    async def aclose(self) -> None:
        await self._client.aclose()
