# =============================================================================
# Listener Worker Processes
# =============================================================================
# Each mailbox's listener runs in its own OS process:
#
#     python -m idlewatch [--config PATH] [--debug] listen <mailbox-id>
#
# A crash, hang or leak in one mailbox's IDLE session therefore cannot touch
# other mailboxes or the manager. The manager only ever sees "worker not
# running".
#
# The worker's stdout/stderr are read line by line and re-logged, tagged
# with the mailbox address.
# =============================================================================

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol, Sequence

if TYPE_CHECKING:
    from idlewatch.core import MailboxCredential

logger = logging.getLogger(__name__)

# Seconds to keep reading a stopped child's output before giving up
OUTPUT_DRAIN_TIMEOUT = 2


class Worker(Protocol):
    """What the manager needs from a running listener."""

    def is_running(self) -> bool: ...

    async def stop(self) -> None: ...


class Spawner(Protocol):
    """Starts a listener worker for a mailbox."""

    async def spawn(self, mailbox: "MailboxCredential") -> Worker: ...


class ProcessWorker:
    """
    A listener running in a child process.

    Attributes:
        mailbox: The mailbox the child listens to.
        process: The asyncio subprocess handle.
        started_at: When the process was spawned.
    """

    def __init__(
        self,
        mailbox: "MailboxCredential",
        process: asyncio.subprocess.Process,
        stop_timeout: float = 10,
    ) -> None:
        self.mailbox = mailbox
        self.process = process
        self.stop_timeout = stop_timeout
        self.started_at = datetime.now(timezone.utc)
        self._pumps = [
            asyncio.create_task(
                self._pump(process.stdout, logging.INFO),
                name=f"idle-stdout-{mailbox.id}",
            ),
            asyncio.create_task(
                self._pump(process.stderr, logging.ERROR),
                name=f"idle-stderr-{mailbox.id}",
            ),
        ]

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def is_running(self) -> bool:
        """Check if the child process is still alive."""
        return self.process.returncode is None

    async def stop(self) -> None:
        """
        Terminate the child: SIGTERM, then SIGKILL after stop_timeout.

        Returns at once if the child is already dead.
        """
        if self.is_running():
            logger.debug(f"Sending SIGTERM to listener {self.pid} ({self.mailbox.email_address})")
            try:
                self.process.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass

            try:
                await asyncio.wait_for(self.process.wait(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Listener {self.pid} ({self.mailbox.email_address}) ignored SIGTERM, killing"
                )
                try:
                    self.process.kill()
                except ProcessLookupError:
                    pass
                await self.process.wait()

        # Let the readers log whatever the child wrote before exiting
        await asyncio.wait(self._pumps, timeout=OUTPUT_DRAIN_TIMEOUT)
        for pump in self._pumps:
            pump.cancel()
        await asyncio.gather(*self._pumps, return_exceptions=True)

    async def _pump(self, stream: asyncio.StreamReader | None, level: int) -> None:
        """Re-log every line the child writes, tagged with its mailbox address."""
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.log(level, f"IMAP IDLE [{self.mailbox.email_address}]: {text}")


class ProcessSpawner:
    """
    Spawns `idlewatch listen <id>` child processes.

    Attributes:
        cli_args: Global CLI arguments passed to every child
                  (e.g. ["--config", "/etc/idlewatch.toml"]).
        stop_timeout: Grace period between SIGTERM and SIGKILL.
    """

    def __init__(self, cli_args: Sequence[str] = (), stop_timeout: float = 10) -> None:
        self.cli_args = list(cli_args)
        self.stop_timeout = stop_timeout

    def command(self, mailbox: "MailboxCredential") -> list[str]:
        """The argv used to run a listener for a mailbox."""
        return [sys.executable, "-m", "idlewatch", *self.cli_args, "listen", str(mailbox.id)]

    async def spawn(self, mailbox: "MailboxCredential") -> ProcessWorker:
        """
        Start a listener process for the mailbox.

        Raises:
            OSError: If the process cannot be started.
        """
        env = dict(os.environ)
        env["PYTHONUNBUFFERED"] = "1"

        process = await asyncio.create_subprocess_exec(
            *self.command(mailbox),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        logger.debug(f"Spawned listener {process.pid} for {mailbox}")
        return ProcessWorker(mailbox, process, stop_timeout=self.stop_timeout)
