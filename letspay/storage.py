"""Account-scoped local state for the LetsPay client.

Persists the small set of facts the client keeps between runs, keyed by
account address:

- connected: the account completed a connect and may be silently restored
- verified: a local verification override (set once KYC succeeded)
- username: the last registrar name seen for the account

All three facts are cleared together when an account goes away. Storage
failures are logged and never propagate; a missing or unreadable file simply
reads as "nothing cached".
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"


@dataclass
class AccountState:
    """Locally persisted facts for one account."""

    connected: bool = False
    verified: bool = False
    username: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountState":
        username = data.get("username")
        return cls(
            connected=bool(data.get("connected", False)),
            verified=bool(data.get("verified", False)),
            username=username if isinstance(username, str) and username else None,
        )


def _account_key(account: str) -> str:
    return account.strip().lower()


class LocalStateStore:
    """JSON file store for account-scoped facts.

    Args:
        state_dir: Directory holding ``state.json`` (created on first write)
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / STATE_FILENAME

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to read local state from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, dict)}

    def _write_all(self, data: Dict[str, Dict[str, Any]]) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.warning(f"Failed to write local state to {self.path}: {e}")

    def _update(self, account: str, **fields: Any) -> None:
        data = self._read_all()
        key = _account_key(account)
        entry = data.get(key, {})
        entry.update(fields)
        data[key] = entry
        self._write_all(data)

    def load(self, account: str) -> AccountState:
        """Load the cached facts for an account (defaults when absent)."""
        entry = self._read_all().get(_account_key(account))
        if not entry:
            return AccountState()
        return AccountState.from_dict(entry)

    def set_connected(self, account: str, connected: bool = True) -> None:
        self._update(account, connected=connected)

    def set_verified(self, account: str, verified: bool = True) -> None:
        self._update(account, verified=verified)

    def set_username(self, account: str, username: Optional[str]) -> None:
        self._update(account, username=username)

    def clear(self, account: str) -> None:
        """Remove every cached fact for an account."""
        data = self._read_all()
        if data.pop(_account_key(account), None) is not None:
            self._write_all(data)

    def clear_all(self) -> None:
        self._write_all({})

    def snapshot(self) -> Dict[str, AccountState]:
        """All cached accounts, for diagnostics."""
        return {k: AccountState.from_dict(v) for k, v in self._read_all().items()}
