# =============================================================================
# idlewatch Core Module
# =============================================================================
# Core domain models for idlewatch. These are plain dataclasses with no
# external dependencies, so every other layer can import them freely.
#
#   - MailboxCredential: one monitored IMAP mailbox and its connection details
#   - Encryption: how to secure the IMAP connection
#   - SyncOptions / SyncRequest: what gets placed on the sync queue
# =============================================================================

from idlewatch.core.mailbox import Encryption, MailboxCredential
from idlewatch.core.sync import SyncOptions, SyncRequest

__all__ = [
    "Encryption",
    "MailboxCredential",
    "SyncOptions",
    "SyncRequest",
]
