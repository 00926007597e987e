# =============================================================================
# IDLE Listener
# =============================================================================
# Keeps one mailbox under IMAP IDLE for as long as the process runs.
#
# Key responsibilities:
#   - Connect, authenticate and select INBOX
#   - Wait for pushes; turn new-mail pushes into incremental-sync requests
#   - Keep the connection alive with NOOP between IDLE commands
#   - Rebuild the connection after it is lost
#
# State machine:
#
#   CONNECTING -> IDLING -> NOTIFIED        -> IDLING
#                        -> TIMED_OUT       -> IDLING
#                        -> CONNECTION_LOST -> CONNECTING
#
#   STOPPED is entered only on stop() or a failed CONNECTING.
#
# Design notes:
#   - IDLE is re-issued every 29 minutes, under the ~30 minute server limit
#   - A failed CONNECTING ends the listener with exit code 1; restarting it
#     is the supervisor's job
#   - stop() interrupts any wait immediately, including the IDLE wait
# =============================================================================

import asyncio
import logging
import re
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from idlewatch.core import SyncOptions
from idlewatch.imap.client import IMAPClient, IMAPError

if TYPE_CHECKING:
    from idlewatch.core import MailboxCredential

logger = logging.getLogger(__name__)


class ListenerState(Enum):
    """Where a listener is in its IDLE loop."""
    CONNECTING = auto()
    IDLING = auto()
    NOTIFIED = auto()
    TIMED_OUT = auto()
    CONNECTION_LOST = auto()
    STOPPED = auto()


# enqueue_incremental_sync(mailbox_id, options)
SyncTrigger = Callable[[int, SyncOptions], Awaitable[Any]]

# Builds a fresh (unconnected) client for a mailbox
ClientFactory = Callable[["MailboxCredential"], IMAPClient]

SleepFunc = Callable[[float], Awaitable[None]]

_EXISTS_RE = re.compile(r"^\*?\s*(\d+)\s+EXISTS\b", re.IGNORECASE)

# Returned by _until_stopped() when stop() won the race
_STOPPED = object()


class IdleListener:
    """
    Runs the IDLE loop for a single mailbox.

    Usage:
        >>> listener = IdleListener(mailbox, repository.enqueue_incremental_sync)
        >>> exit_code = await listener.run()   # returns after stop() or a fatal error

    Attributes:
        mailbox: Mailbox being monitored, secret already resolved.
        state: Current ListenerState.
        sessions_opened: Number of connections established so far.
    """

    # How long one IDLE command may last (RFC 2177 recommends < 30 min)
    IDLE_TIMEOUT = 29 * 60  # 1740 seconds

    # Cooldown between a lost connection and the next connect
    RECONNECT_DELAY = 5  # seconds

    def __init__(
        self,
        mailbox: "MailboxCredential",
        enqueue_sync: SyncTrigger,
        *,
        folder: str = "INBOX",
        idle_timeout: float | None = None,
        reconnect_delay: float | None = None,
        client_factory: ClientFactory = IMAPClient,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.mailbox = mailbox
        self.folder = folder
        self.idle_timeout = idle_timeout if idle_timeout is not None else self.IDLE_TIMEOUT
        self.reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else self.RECONNECT_DELAY
        )
        self.state = ListenerState.CONNECTING
        self.sessions_opened = 0

        self._enqueue_sync = enqueue_sync
        self._client_factory = client_factory
        self._sleep = sleep
        self._stop_event = asyncio.Event()
        self._client: IMAPClient | None = None

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the listener to finish. Safe to call from a signal handler."""
        if not self._stop_event.is_set():
            logger.info(f"Stopping IDLE listener for {self.mailbox.email_address}")
            self._stop_event.set()

    def _set_state(self, state: ListenerState) -> None:
        if state is not self.state:
            logger.debug(f"{self.mailbox.email_address}: {self.state.name} -> {state.name}")
            self.state = state

    # =========================================================================
    # Main Loop
    # =========================================================================

    async def run(self) -> int:
        """
        Run until stop() is called or a connect attempt fails.

        Returns:
            0 after a graceful stop, 1 after a fatal connect failure.
        """
        mailbox = self.mailbox
        logger.info(f"IMAP IDLE listener started for {mailbox}")

        try:
            while not self.stopping:
                try:
                    if not await self._connect():
                        break
                except IMAPError as e:
                    logger.error(f"IMAP IDLE listener failed for {mailbox}: {e}")
                    return 1

                try:
                    await self._idle_loop()
                except Exception as e:
                    await self._connection_lost(e)

        finally:
            await self._discard_client()
            self._set_state(ListenerState.STOPPED)

        logger.info(f"IMAP IDLE listener stopped for {mailbox}")
        return 0

    async def _connect(self) -> bool:
        """
        CONNECTING: open a new session and select the folder.

        Returns:
            False if stop() was called while connecting.

        Raises:
            IMAPError: If connecting, logging in or selecting fails.
        """
        self._set_state(ListenerState.CONNECTING)
        client = self._client_factory(self.mailbox)
        self._client = client

        result = await self._until_stopped(self._open(client))
        if result is _STOPPED:
            return False

        self.sessions_opened += 1
        logger.info(f"Entering IDLE mode on {self.mailbox.email_address}/{self.folder}")
        return True

    async def _open(self, client: IMAPClient) -> None:
        await client.connect()
        if not client.supports_idle():
            raise IMAPError(f"{self.mailbox.host} does not support IDLE")
        await client.select_folder(self.folder)

    async def _idle_loop(self) -> None:
        """
        IDLING: wait for pushes on the current connection until stopped.

        Raises:
            Exception: Any I/O or protocol error; the connection is lost.
        """
        client = self._client
        while not self.stopping:
            self._set_state(ListenerState.IDLING)

            notifications = await self._until_stopped(client.idle(self.idle_timeout))
            if notifications is _STOPPED:
                return

            if notifications:
                self._set_state(ListenerState.NOTIFIED)
                await self._handle_notifications(notifications)
            else:
                self._set_state(ListenerState.TIMED_OUT)
                logger.debug(f"IDLE refresh for {self.mailbox.email_address}")
                if await self._until_stopped(client.noop()) is _STOPPED:
                    return

    async def _handle_notifications(self, notifications: list[str]) -> None:
        """Queue one incremental sync if the batch reports new mail."""
        new_mail = [n for n in notifications if self._is_new_mail(n)]
        if not new_mail:
            logger.debug(
                f"IDLE: ignoring non-mail notifications from "
                f"{self.mailbox.email_address}: {notifications}"
            )
            return

        logger.info(
            f"IMAP IDLE: New email detected for {self.mailbox} ({new_mail[-1].strip()})"
        )
        try:
            await self._enqueue_sync(self.mailbox.id, SyncOptions.idle_notification())
        except Exception as e:
            logger.error(f"Failed to queue sync for {self.mailbox}: {e}")

    @staticmethod
    def _is_new_mail(notification: str) -> bool:
        """
        Check if a push line announces new mail.

        Common pushes (aioimaplib may or may not keep the leading *):
            - "N EXISTS"  - N messages now exist (new mail)
            - "N EXPUNGE" - message N was deleted
            - "N FETCH (FLAGS ...)" - flags changed on message N
        """
        return _EXISTS_RE.match(notification.strip()) is not None

    async def _connection_lost(self, error: Exception) -> None:
        """CONNECTION_LOST: drop the session and cool down before reconnecting."""
        self._set_state(ListenerState.CONNECTION_LOST)
        logger.warning(f"IMAP IDLE connection lost for {self.mailbox}, reconnecting: {error}")

        await self._discard_client()

        if not self.stopping:
            await self._until_stopped(self._sleep(self.reconnect_delay))

    async def _discard_client(self) -> None:
        """Best-effort disconnect. Errors are ignored: the session is being thrown away."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as e:
            logger.debug(f"Ignoring disconnect error for {self.mailbox.email_address}: {e}")

    async def _until_stopped(self, awaitable: Awaitable[Any]) -> Any:
        """
        Await something, giving up as soon as stop() is called.

        Returns:
            The awaitable's result, or _STOPPED if stop() came first.
        """
        task = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            stopper.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Ignoring error from interrupted operation: {e}")
        return _STOPPED
