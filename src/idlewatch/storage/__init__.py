# =============================================================================
# Storage Module
# =============================================================================
# Persistent storage shared with the web application, via SQLite.
#
# Provides:
#   - Database initialization (aiosqlite, WAL mode)
#   - The mailbox store (eligible mailboxes, keyring-backed secrets)
#   - The incremental-sync job queue
# =============================================================================

from idlewatch.storage.database import Database
from idlewatch.storage.repository import (
    MailboxNotFoundError,
    Repository,
    SecretNotFoundError,
    StorageError,
)

__all__ = [
    "Database",
    "Repository",
    "StorageError",
    "MailboxNotFoundError",
    "SecretNotFoundError",
]
