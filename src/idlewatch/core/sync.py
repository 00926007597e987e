# =============================================================================
# Sync Requests
# =============================================================================
# The payload this service places on the web application's job queue.
#
# An incremental sync only fetches new/unseen messages in a capped batch,
# as opposed to a full mailbox sync.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class SyncOptions:
    """
    Parameters of an incremental sync job.

    Attributes:
        quick: Only look at new/unseen messages.
        limit: Maximum number of messages to fetch in this batch.
        fetch_all: Fetch every message instead of only new ones.
    """
    quick: bool = True
    limit: int = 5
    fetch_all: bool = False

    @classmethod
    def idle_notification(cls) -> "SyncOptions":
        """Options used when IDLE reports new mail."""
        return cls(quick=True, limit=5, fetch_all=False)

    @classmethod
    def polling(cls) -> "SyncOptions":
        """Options used by the scheduled dispatch-sync command."""
        return cls(quick=True, limit=10, fetch_all=False)

    def to_dict(self) -> dict[str, bool | int]:
        return {"quick": self.quick, "limit": self.limit, "fetch_all": self.fetch_all}


@dataclass
class SyncRequest:
    """A queued incremental-sync job for one mailbox."""
    mailbox_id: int
    options: SyncOptions = field(default_factory=SyncOptions.idle_notification)
    queued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: int | None = None   # Primary key (None until queued)
