"""Name registrar client.

Usernames are labels bound to an owner address under a fixed parent
namespace (``alice`` -> ``alice.letspay.eth``). The registrar is an
off-chain HTTP service:

- ``GET  /ens-availability/{label}`` -> ``{"available": bool}``
- ``POST /register-subname`` ``{"label", "owner"}`` -> ``{"success", "subname"}``
- ``GET  /ens-subnames/{owner}`` -> ``{"subnames": [{"name", ...}]}``

Every transport failure or non-2xx response surfaces as
``RegistrarUnavailable`` so the onboarding step can show it and retry.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from letspay.errors import (
    InvalidUsernameError,
    RegistrarOwnershipMismatch,
    RegistrarUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_PARENT_NAMESPACE = "letspay.eth"

_LABEL_RE = re.compile(r"^[a-z0-9-]{3,50}$")


@dataclass(frozen=True)
class UsernameRecord:
    """A label bound to an owner under the parent namespace."""

    label: str
    owner: Optional[str] = None
    parent_namespace: str = DEFAULT_PARENT_NAMESPACE

    @property
    def full_name(self) -> str:
        return f"{self.label}.{self.parent_namespace}"

    @classmethod
    def from_name(
        cls,
        name: str,
        owner: Optional[str] = None,
        parent_namespace: str = DEFAULT_PARENT_NAMESPACE,
    ) -> "UsernameRecord":
        """Build a record from a bare label or a full name."""
        suffix = f".{parent_namespace}"
        label = name[: -len(suffix)] if name.endswith(suffix) else name
        return cls(label=label, owner=owner, parent_namespace=parent_namespace)


# =============================================================================
# Response models
# =============================================================================


class _Subname(BaseModel):
    name: str
    owner: Optional[str] = None


class _AvailabilityResponse(BaseModel):
    available: bool = False


class _RegisterResponse(BaseModel):
    success: bool = False
    subname: Optional[_Subname] = None


class _SubnamesResponse(BaseModel):
    subnames: List[_Subname] = []


# =============================================================================
# Label validation
# =============================================================================


def normalize_label(label: str) -> str:
    return label.strip().lower()


def validate_label(label: str) -> str:
    """Normalize and validate a username label.

    Returns:
        The normalized label

    Raises:
        InvalidUsernameError: If the label is empty or malformed
    """
    normalized = normalize_label(label)
    if not normalized:
        raise InvalidUsernameError("Please enter a username")
    if not _LABEL_RE.match(normalized):
        raise InvalidUsernameError("Only a-z, 0-9, '-' allowed; 3 to 50 chars")
    if normalized.startswith("-") or normalized.endswith("-"):
        raise InvalidUsernameError("Username cannot start or end with '-'")
    return normalized


def _same_address(a: str, b: str) -> bool:
    return a.strip().lower() == b.strip().lower()


class RegistrarClient:
    """HTTP client for the name registrar.

    Args:
        base_url: Registrar base URL
        parent_namespace: Namespace labels are registered under
        timeout: Request timeout in seconds
        client: Optional pre-configured ``httpx.AsyncClient``
    """

    def __init__(
        self,
        base_url: str,
        parent_namespace: str = DEFAULT_PARENT_NAMESPACE,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.parent_namespace = parent_namespace
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Registrar returned {e.response.status_code} for {method} {path}")
            raise RegistrarUnavailable(
                f"Registrar error (HTTP {e.response.status_code})"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Registrar request {method} {path} failed: {e}")
            raise RegistrarUnavailable(f"Registrar unreachable: {e}") from e

    async def check_availability(self, label: str) -> bool:
        """Check whether a label is free under the parent namespace."""
        normalized = normalize_label(label)
        if not normalized:
            return False
        data = await self._request("GET", f"/ens-availability/{quote(normalized, safe='')}")
        try:
            return _AvailabilityResponse.model_validate(data).available
        except ValidationError as e:
            raise RegistrarUnavailable(f"Malformed availability response: {e}") from e

    async def register(self, label: str, owner: str) -> UsernameRecord:
        """Register a label for an owner.

        Returns:
            The registered record

        Raises:
            InvalidUsernameError: If the label fails validation
            RegistrarUnavailable: If the registrar fails or declines
            RegistrarOwnershipMismatch: If the registrar bound it to someone else
        """
        normalized = validate_label(label)
        data = await self._request(
            "POST",
            "/register-subname",
            json={"label": normalized, "owner": owner},
        )
        try:
            response = _RegisterResponse.model_validate(data)
        except ValidationError as e:
            raise RegistrarUnavailable(f"Malformed registration response: {e}") from e
        if not response.success:
            raise RegistrarUnavailable("Failed to register username")

        record = UsernameRecord(
            label=normalized, owner=owner, parent_namespace=self.parent_namespace
        )
        if response.subname and response.subname.owner:
            if not _same_address(response.subname.owner, owner):
                raise RegistrarOwnershipMismatch(
                    record.full_name, response.subname.owner, owner
                )
        logger.info(f"Registered username {record.full_name} for {owner}")
        return record

    async def list_names(self, owner: str) -> List[UsernameRecord]:
        """List names owned by an address, in registrar order."""
        data = await self._request("GET", f"/ens-subnames/{quote(owner, safe='')}")
        try:
            response = _SubnamesResponse.model_validate(data)
        except ValidationError as e:
            raise RegistrarUnavailable(f"Malformed subnames response: {e}") from e

        records = []
        for subname in response.subnames:
            if subname.owner and not _same_address(subname.owner, owner):
                raise RegistrarOwnershipMismatch(subname.name, subname.owner, owner)
            records.append(
                UsernameRecord.from_name(subname.name, owner, self.parent_namespace)
            )
        return records

    async def lookup_username(self, owner: str) -> Optional[UsernameRecord]:
        """First name owned by an address, if any."""
        records = await self.list_names(owner)
        return records[0] if records else None

    async def aclose(self) -> None:
        await self._client.aclose()
