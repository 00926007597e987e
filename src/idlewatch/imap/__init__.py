# =============================================================================
# IMAP Module
# =============================================================================
# Everything that talks IMAP:
#   - IMAPClient: aioimaplib connection (SSL/STARTTLS/plain, login, SELECT,
#     IDLE, NOOP)
#   - IdleListener: the per-mailbox IDLE loop and its reconnect policy
# =============================================================================

from idlewatch.imap.client import (
    IMAPClient,
    IMAPError,
    IMAPConnectionError,
    IMAPAuthenticationError,
    ConnectionState,
)
from idlewatch.imap.idle import (
    IdleListener,
    ListenerState,
)

__all__ = [
    # Client
    "IMAPClient",
    "IMAPError",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
    "ConnectionState",
    # IDLE
    "IdleListener",
    "ListenerState",
]
