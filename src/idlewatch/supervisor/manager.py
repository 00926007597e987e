# =============================================================================
# IDLE Manager
# =============================================================================
# Supervises one listener worker per eligible mailbox.
#
# Key responsibilities:
#   - Discover eligible mailboxes (active, not deleted, IMAP)
#   - Start a worker per mailbox and restart workers that died
#   - Every 60 seconds, reconcile workers against the mailbox store
#   - Stop every worker on SIGTERM/SIGINT
#
# Design notes:
#   - At most one ListenerHandle per mailbox id, hence at most one IDLE
#     session per mailbox
#   - All handle bookkeeping happens on the manager's own event loop task;
#     signal handlers only set an event
#   - No state survives a manager restart; the handle map is rebuilt from
#     the mailbox store
#   - A failing supervision pass is logged and retried on the next tick
# =============================================================================

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from idlewatch.supervisor.worker import Spawner, Worker

if TYPE_CHECKING:
    from idlewatch.core import MailboxCredential
    from idlewatch.storage import Repository

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ListenerHandle:
    """
    The manager's record of one running listener.

    Attributes:
        mailbox: Mailbox the worker listens to.
        worker: Handle to the worker (process).
        started_at: When this worker was spawned.
        last_seen_alive: Last time a supervision pass found it running.
        restarts: How many times this mailbox's worker has been restarted.
    """
    mailbox: "MailboxCredential"
    worker: Worker
    started_at: datetime = field(default_factory=_now)
    last_seen_alive: datetime = field(default_factory=_now)
    restarts: int = 0


class IdleManager:
    """
    Keeps the set of running listeners equal to the set of eligible mailboxes.

    Usage:
        >>> manager = IdleManager(repository, ProcessSpawner())
        >>> manager.install_signal_handlers()
        >>> exit_code = await manager.run()

    Attributes:
        mailbox_ids: Restrict supervision to these mailbox ids (None = all).
        reconcile_interval: Seconds between reconciliation passes.
    """

    # Seconds between reconciliation passes
    RECONCILE_INTERVAL = 60

    def __init__(
        self,
        repository: "Repository",
        spawner: Spawner,
        *,
        mailbox_ids: Iterable[int] | None = None,
        all_mailboxes: bool = False,
        reconcile_interval: float | None = None,
    ) -> None:
        self.repository = repository
        self.spawner = spawner
        ids = list(mailbox_ids or [])
        # --all wins; no ids means all eligible mailboxes as well
        self.mailbox_ids: list[int] | None = None if all_mailboxes or not ids else ids
        self.reconcile_interval = (
            reconcile_interval if reconcile_interval is not None else self.RECONCILE_INTERVAL
        )

        self._handles: dict[int, ListenerHandle] = {}
        self._stop_event = asyncio.Event()
        self._shut_down = False

    @property
    def handles(self) -> dict[int, ListenerHandle]:
        """Snapshot of the tracked handles, keyed by mailbox id."""
        return dict(self._handles)

    @property
    def tracked_ids(self) -> set[int]:
        return set(self._handles)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    # =========================================================================
    # Discovery
    # =========================================================================

    async def discover_eligible_mailboxes(self) -> list["MailboxCredential"]:
        """Read the eligible mailboxes in scope from the mailbox store."""
        return await self.repository.list_eligible_mailboxes(self.mailbox_ids)

    # =========================================================================
    # Worker Lifecycle
    # =========================================================================

    async def start_worker(self, mailbox: "MailboxCredential", restarts: int = 0) -> bool:
        """
        Spawn a listener for a mailbox and track it.

        An existing handle for the same mailbox is stopped first.

        Returns:
            True if the worker was spawned. Spawn failures are logged and
            left for the next reconciliation pass.
        """
        if mailbox.id in self._handles:
            await self.stop_worker(mailbox.id)

        logger.info(f"Starting IDLE listener for {mailbox}")
        try:
            worker = await self.spawner.spawn(mailbox)
        except Exception as e:
            logger.error(f"Failed to start IDLE listener for {mailbox}: {e}")
            return False

        self._handles[mailbox.id] = ListenerHandle(
            mailbox=mailbox,
            worker=worker,
            restarts=restarts,
        )
        return True

    async def stop_worker(self, mailbox_id: int) -> None:
        """Stop a mailbox's worker and forget its handle. Unknown ids are ignored."""
        handle = self._handles.pop(mailbox_id, None)
        if handle is None:
            return

        logger.info(f"Stopping listener for mailbox {mailbox_id}")
        try:
            await handle.worker.stop()
        except Exception as e:
            logger.warning(f"Error stopping listener for mailbox {mailbox_id}: {e}")

    # =========================================================================
    # Supervision
    # =========================================================================

    async def check_workers(self) -> None:
        """
        Restart dead workers whose mailbox is still eligible; drop the rest.
        """
        dead = []
        now = _now()
        for mailbox_id, handle in self._handles.items():
            if handle.worker.is_running():
                handle.last_seen_alive = now
            else:
                dead.append(mailbox_id)

        if not dead:
            return

        eligible = {m.id: m for m in await self.discover_eligible_mailboxes()}

        for mailbox_id in dead:
            handle = self._handles[mailbox_id]
            mailbox = eligible.get(mailbox_id)
            if mailbox is not None:
                logger.warning(f"Listener for mailbox {mailbox_id} stopped. Restarting...")
                await self.start_worker(mailbox, restarts=handle.restarts + 1)
            else:
                logger.info(f"Mailbox {mailbox_id} is no longer eligible, dropping its listener")
                await self.stop_worker(mailbox_id)

    async def reconcile(self) -> None:
        """
        Start listeners for new mailboxes and stop listeners for removed ones.

        Afterwards the tracked ids equal the eligible ids (minus any spawn
        failures, which are retried on the next pass).
        """
        eligible = {m.id: m for m in await self.discover_eligible_mailboxes()}
        current = set(self._handles)

        for mailbox_id in sorted(eligible.keys() - current):
            logger.info(f"Found new IMAP mailbox: {eligible[mailbox_id]}")
            await self.start_worker(eligible[mailbox_id])

        for mailbox_id in sorted(current - eligible.keys()):
            logger.info(f"Mailbox {mailbox_id} was deleted, deactivated or is no longer IMAP")
            await self.stop_worker(mailbox_id)

        for mailbox_id, mailbox in eligible.items():
            if mailbox_id in self._handles:
                self._handles[mailbox_id].mailbox = mailbox

    async def run(self) -> int:
        """
        Supervise listeners until shutdown is requested.

        Returns:
            Exit code (0). Returns immediately when no mailbox is eligible.
        """
        logger.info("Starting IMAP IDLE Manager...")

        mailboxes = await self.discover_eligible_mailboxes()
        if not mailboxes:
            logger.warning("No IMAP mailboxes found to monitor.")
            return 0

        logger.info(f"Monitoring {len(mailboxes)} IMAP mailbox(es)")

        try:
            for mailbox in mailboxes:
                if self.stopping:
                    break
                await self.start_worker(mailbox)

            while not self.stopping:
                await self._supervise(self.check_workers)
                if await self._wait_for_tick():
                    break
                await self._supervise(self.reconcile)
        finally:
            await self.shutdown()

        return 0

    async def _supervise(self, step: Callable[[], Awaitable[None]]) -> None:
        """Run one supervision pass. Failures are logged and retried next tick."""
        try:
            await step()
        except Exception as e:
            logger.exception(f"Supervision pass {step.__name__} failed, retrying next tick: {e}")

    async def _wait_for_tick(self) -> bool:
        """
        Sleep one reconciliation interval.

        Returns:
            True if shutdown was requested during the sleep.
        """
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconcile_interval)
        except asyncio.TimeoutError:
            return False
        return True

    # =========================================================================
    # Shutdown
    # =========================================================================

    def request_shutdown(self) -> None:
        """Ask run() to stop. Safe to call from a signal handler."""
        if not self._stop_event.is_set():
            logger.info("Shutting down IMAP IDLE Manager...")
            self._stop_event.set()

    async def shutdown(self) -> None:
        """Stop every tracked worker. Idempotent."""
        self._stop_event.set()
        if self._shut_down:
            return
        self._shut_down = True

        ids = list(self._handles)
        await asyncio.gather(*(self.stop_worker(i) for i in ids))
        logger.info(f"Stopped {len(ids)} listener(s)")

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Route SIGTERM and SIGINT to request_shutdown()."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)
