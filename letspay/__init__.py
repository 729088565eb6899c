"""
LetsPay - shared escrow payments against a revolving credit line.

Client core: session management, escrow orchestration, and onboarding.
"""

from .client import LetsPay
from .config import Settings, get_settings

try:
    from importlib.metadata import version

    __version__ = version("letspay")
except Exception:
    __version__ = "0.0.0"

__all__ = ["LetsPay", "Settings", "get_settings"]
