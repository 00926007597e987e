# =============================================================================
# Scheduled Sync Dispatch
# =============================================================================
# Polling fallback next to IDLE: queue a small incremental sync for every
# eligible mailbox, meant to run from cron every few minutes.
#
# Scheduling rules:
#   - Explicit ids or --all: every eligible mailbox in scope is considered
#   - Otherwise: only mailboxes never synced or last synced > 5 minutes ago
#   - Mailboxes synced within the last 2 minutes are skipped unless forced
# =============================================================================

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable

from idlewatch.core import SyncOptions

if TYPE_CHECKING:
    from idlewatch.storage import Repository

logger = logging.getLogger(__name__)


# Mailboxes synced more recently than this are skipped
RECENT_SYNC_WINDOW = timedelta(minutes=2)

# Without explicit scope, only mailboxes idle for longer than this are considered
STALE_SYNC_WINDOW = timedelta(minutes=5)


@dataclass
class DispatchResult:
    """Mailbox ids that got a sync queued, and ids skipped as recently synced."""
    dispatched: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


async def dispatch_polling_sync(
    repository: "Repository",
    mailbox_ids: Iterable[int] | None = None,
    all_mailboxes: bool = False,
    force: bool = False,
    now: datetime | None = None,
) -> DispatchResult:
    """
    Queue polling syncs for eligible mailboxes.

    Args:
        repository: Mailbox store and sync queue.
        mailbox_ids: Restrict to these mailboxes.
        all_mailboxes: Consider every eligible mailbox.
        force: Also dispatch for recently synced mailboxes.
        now: Current time (for tests).

    Returns:
        Which mailboxes were dispatched and which were skipped.
    """
    now = now or datetime.now(timezone.utc)
    ids = list(mailbox_ids or [])

    if all_mailboxes:
        mailboxes = await repository.list_eligible_mailboxes()
    elif ids:
        mailboxes = await repository.list_eligible_mailboxes(ids)
    else:
        mailboxes = [
            m for m in await repository.list_eligible_mailboxes()
            if m.last_sync_at is None or m.last_sync_at < now - STALE_SYNC_WINDOW
        ]

    result = DispatchResult()
    if not mailboxes:
        logger.info("No IMAP mailboxes to sync.")
        return result

    logger.info(f"Syncing {len(mailboxes)} IMAP mailbox(es)")
    options = SyncOptions.polling()

    for mailbox in mailboxes:
        recently = mailbox.last_sync_at is not None and mailbox.last_sync_at > now - RECENT_SYNC_WINDOW
        if recently and not force:
            logger.info(f"Skipping {mailbox.email_address} - recently synced")
            result.skipped.append(mailbox.id)
            continue

        logger.info(f"Dispatching sync for {mailbox.email_address}")
        await repository.enqueue_incremental_sync(mailbox.id, options)
        await repository.mark_synced(mailbox.id, now)
        result.dispatched.append(mailbox.id)

    return result
