"""Signing provider abstraction (EIP-1193 shape).

The session manager talks to a wallet through three calls:

- ``await provider.request(method, params)``: a JSON-RPC style request
- ``provider.on(event, listener)`` / ``provider.remove_listener(...)``:
  subscription to ``accountsChanged`` and ``chainChanged``

``HttpProvider`` adapts a plain JSON-RPC node (one that holds unlocked
accounts, e.g. a local dev node or a wallet bridge) to this surface.
"""

import inspect
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from letspay.errors import INTERNAL_RPC_ERROR, UNRECOGNIZED_CHAIN, ProviderRpcError

logger = logging.getLogger(__name__)

ACCOUNTS_CHANGED = "accountsChanged"
CHAIN_CHANGED = "chainChanged"

Listener = Callable[..., Any]


def hex_chain_id(chain_id: int) -> str:
    """Format a chain id the way wallets expect it (545 -> ``0x221``)."""
    return hex(chain_id)


def parse_quantity(value: Any) -> int:
    """Parse a JSON-RPC quantity (chain id, balance) given as hex string or int."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    raise ValueError(f"Unrecognized quantity: {value!r}")


class Provider(Protocol):
    """Minimal EIP-1193 provider surface used by the client core."""

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        ...

    def on(self, event: str, listener: Listener) -> None:
        ...

    def remove_listener(self, event: str, listener: Listener) -> None:
        ...


class EventEmitter:
    """Listener registry with awaitable dispatch.

    Listeners may be plain callables or coroutine functions; ``emit`` awaits
    coroutine results in registration order.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    async def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            result = listener(*args)
            if inspect.isawaitable(result):
                await result


class HttpProvider(EventEmitter):
    """EIP-1193 adapter over a JSON-RPC node reached with httpx.

    A node cannot prompt a user or hop networks, so:

    - ``eth_requestAccounts`` is served by ``eth_accounts``
    - ``wallet_switchEthereumChain`` succeeds only if the node already serves
      the requested chain, otherwise it fails with code 4902

    Args:
        rpc_url: JSON-RPC endpoint
        timeout: Request timeout in seconds
        client: Optional pre-configured ``httpx.AsyncClient``
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        if method == "eth_requestAccounts":
            return await self._rpc_call("eth_accounts", [])
        if method == "wallet_switchEthereumChain":
            return await self._switch_chain(params or [])
        return await self._rpc_call(method, params or [])

    async def _switch_chain(self, params: List[Any]) -> None:
        requested = params[0].get("chainId") if params and isinstance(params[0], dict) else None
        if requested is None:
            raise ProviderRpcError(-32602, "Missing chainId")
        current = await self._rpc_call("eth_chainId", [])
        if parse_quantity(current) != parse_quantity(requested):
            raise ProviderRpcError(
                UNRECOGNIZED_CHAIN,
                f"Node at {self.rpc_url} serves chain {current}, not {requested}",
            )
        return None

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC call to the node."""
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
            logger.debug(f"RPC transport error calling {method}: {e}")
            raise ProviderRpcError(INTERNAL_RPC_ERROR, f"RPC transport error: {e}") from e

        if "error" in result:
            error = result["error"] or {}
            raise ProviderRpcError(
                int(error.get("code", INTERNAL_RPC_ERROR)),
                str(error.get("message", "RPC error")),
                error.get("data"),
            )
        return result.get("result")

    async def aclose(self) -> None:
        await self._client.aclose()
