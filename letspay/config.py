"""Configuration settings for the LetsPay client."""

import os
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Self attestation contract on the Celo testnet
DEFAULT_ATTESTATION_ADDRESS = "0x62eb4ff58aA643BE97075D523934ef10A50678aE"


class Settings(BaseSettings):
    """Client settings loaded from environment (``LETSPAY_*``) and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="LETSPAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Payment ledger (Flow EVM testnet)
    rpc_url: str = "https://testnet.evm.nodes.onflow.org"
    chain_id: int = 545  # 0x221
    contract_address: str | None = None
    native_decimals: int = 18
    explorer_url: str = "https://evm-testnet.flowscan.io"

    # Off-chain services
    api_base_url: str = "http://localhost:3000"
    verification_base_url: str = "http://localhost:4000"
    parent_namespace: str = "letspay.eth"

    # Attestation ledger; watching is disabled without an RPC url
    attestation_rpc_url: str | None = None
    attestation_address: str = DEFAULT_ATTESTATION_ADDRESS
    attestation_lookback_blocks: int = 5000
    attestation_poll_interval: float = 5.0

    # Timing
    http_timeout: float = 30.0
    receipt_poll_interval: float = 1.0
    receipt_timeout: float = 120.0

    # Local persisted state
    state_dir: Path | None = None

    def resolved_state_dir(self) -> Path:
        """Directory for account-scoped local state."""
        return self.state_dir or get_letspay_home()

    def tx_url(self, tx_hash: str) -> str:
        """Explorer link for a transaction hash."""
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


def get_letspay_home() -> Path:
    """Return ``$LETSPAY_HOME`` or ``~/.letspay``."""
    home = os.environ.get("LETSPAY_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".letspay"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
