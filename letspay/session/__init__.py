"""Session subsystem for the LetsPay client.

Modules:
- state.py: Immutable Session value and the SessionStore container
- manager.py: Connect, silent reconnect, and provider event handling
"""

from letspay.session.manager import SessionManager
from letspay.session.state import Session, SessionStore

__all__ = [
    "Session",
    "SessionStore",
    "SessionManager",
]
