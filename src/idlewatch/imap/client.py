# =============================================================================
# IMAP Client
# =============================================================================
# Provides an async IMAP client wrapper around aioimaplib, reduced to what an
# IDLE session needs.
#
# Key responsibilities:
#   - Connection management (SSL, STARTTLS or plaintext, cert validation)
#   - Authentication with the mailbox's resolved secret
#   - Folder selection
#   - IDLE: wait for server pushes, keep-alive NOOP
#
# Design notes:
#   - Every transport failure surfaces as IMAPConnectionError so the listener
#     can treat it as a lost connection
#   - One client = one connection; reconnecting means building a new client
# =============================================================================

import asyncio
import logging
import ssl
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from aioimaplib import aioimaplib

from idlewatch.core import Encryption

if TYPE_CHECKING:
    from idlewatch.core import MailboxCredential

logger = logging.getLogger(__name__)


def _quote_folder_name(name: str) -> str:
    """Return the folder name as an IMAP astring, quoting it when needed."""
    if not name or any(c in name for c in ' "\\(){}[]%*'):
        return '"' + name.replace('\\', '\\\\').replace('"', '\\"') + '"'
    return name


def build_ssl_context(validate_cert: bool) -> ssl.SSLContext:
    """
    Build the TLS context for a mailbox.

    With validate_cert=False neither the hostname nor the certificate chain
    is checked (self-signed company servers).
    """
    context = ssl.create_default_context()
    if not validate_cert:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


@dataclass
class ConnectionState:
    """What is known about the session: greeting seen, logged in, folder, capabilities."""
    connected: bool = False
    authenticated: bool = False
    selected_folder: str | None = None
    capabilities: list[str] = field(default_factory=list)


class IMAPClient:
    """
    Async IMAP client for one mailbox's IDLE session.

    Usage:
        >>> client = IMAPClient(mailbox)
        >>> await client.connect()
        >>> await client.select_folder("INBOX")
        >>> pushes = await client.idle(timeout=1740)
        >>> await client.noop()
        >>> await client.disconnect()

    Attributes:
        mailbox: The mailbox this connection belongs to (secret resolved).
        state: Current connection state.
    """

    # Timeout for regular IMAP commands (seconds)
    TIMEOUT = 30

    def __init__(self, mailbox: "MailboxCredential") -> None:
        self.mailbox = mailbox
        self.state = ConnectionState()
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected and authenticated."""
        return self.state.connected and self.state.authenticated and self._client is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish and authenticate the connection.

        Raises:
            IMAPConnectionError: If unable to connect to the server.
            IMAPAuthenticationError: If login fails or no secret is available.
        """
        mailbox = self.mailbox
        logger.info(f"Connecting to {mailbox.host}:{mailbox.port} ({mailbox.encryption.value})")

        try:
            if mailbox.encryption is Encryption.SSL:
                self._client = aioimaplib.IMAP4_SSL(
                    host=mailbox.host,
                    port=mailbox.port,
                    timeout=self.TIMEOUT,
                    ssl_context=build_ssl_context(mailbox.validate_cert),
                )
            else:
                self._client = aioimaplib.IMAP4(
                    host=mailbox.host,
                    port=mailbox.port,
                    timeout=self.TIMEOUT,
                )

            await self._client.wait_hello_from_server()
            self.state.connected = True
            self.state.capabilities = list(self._client.protocol.capabilities)
            logger.debug(f"Server capabilities: {self.state.capabilities}")

            if mailbox.encryption is Encryption.STARTTLS:
                if not self._client.has_capability("STARTTLS"):
                    raise IMAPConnectionError("Server does not support STARTTLS")
                logger.debug("Upgrading to TLS via STARTTLS")
                await self._client.starttls(ssl_context=build_ssl_context(mailbox.validate_cert))

            await self._authenticate()

        except IMAPError:
            await self._abort()
            raise
        except asyncio.TimeoutError as e:
            await self._abort()
            raise IMAPConnectionError(
                f"Connection timed out to {mailbox.host}:{mailbox.port}"
            ) from e
        except Exception as e:
            await self._abort()
            raise IMAPConnectionError(
                f"Failed to connect to {mailbox.host}:{mailbox.port}: {e}"
            ) from e

        logger.info(f"Successfully connected to {mailbox.host} as {mailbox.username}")

    async def _authenticate(self) -> None:
        """
        Log in with the mailbox's username and secret.

        Raises:
            IMAPAuthenticationError: If login fails or the secret is missing.
        """
        if not self.mailbox.secret:
            raise IMAPAuthenticationError(f"No secret available for {self.mailbox.email_address}")

        logger.debug(f"Authenticating as {self.mailbox.username}")
        response = await self._client.login(self.mailbox.username, self.mailbox.secret)

        if response.result != "OK":
            # Server text only, the secret is never part of the message
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.mailbox.username}: {response.result}"
            )

        self.state.authenticated = True

    async def disconnect(self) -> None:
        """
        Send LOGOUT (ending any open IDLE first) and forget the connection.

        Errors propagate so callers decide whether they matter.
        """
        client = self._client
        self._client = None
        connected = self.state.connected
        self.state = ConnectionState()

        if client is not None and connected:
            logger.debug("Sending LOGOUT")
            if client.has_pending_idle():
                client.idle_done()
            await asyncio.wait_for(client.logout(), timeout=self.TIMEOUT)

    async def _abort(self) -> None:
        """Drop a half-open connection after a failed connect."""
        try:
            await self.disconnect()
        except Exception as e:
            logger.debug(f"Ignoring error while aborting connection: {e}")

    def _require_client(self) -> aioimaplib.IMAP4:
        if self._client is None or not self.state.connected:
            raise IMAPConnectionError("Not connected")
        return self._client

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def select_folder(self, folder_name: str) -> None:
        """
        Select a folder for IDLE.

        Raises:
            IMAPError: If the server refuses the folder.
            IMAPConnectionError: If the connection fails.
        """
        client = self._require_client()
        logger.debug(f"Selecting folder: {folder_name}")

        try:
            response = await client.select(_quote_folder_name(folder_name))
        except Exception as e:
            raise IMAPConnectionError(f"SELECT {folder_name} failed: {e}") from e

        if response.result != "OK":
            raise IMAPError(f"Failed to select folder '{folder_name}': {response.lines}")

        self.state.selected_folder = folder_name

    # =========================================================================
    # IDLE Support
    # =========================================================================

    def supports_idle(self) -> bool:
        """Check if server supports IDLE."""
        return "IDLE" in [c.upper() for c in self.state.capabilities]

    async def idle(self, timeout: float) -> list[str]:
        """
        Run one IDLE command until the server pushes something or time runs out.

        The IDLE command is always terminated (DONE) before returning, so the
        connection is ready for NOOP or the next IDLE.

        Args:
            timeout: Maximum seconds to wait for a push.

        Returns:
            Push lines from the server (e.g. "3 EXISTS"), or an empty list
            when the timeout expired without any push.

        Raises:
            IMAPConnectionError: On any I/O or protocol error, including the
                server ending IDLE on its own.
        """
        client = self._require_client()

        try:
            idle_task = await client.idle_start(timeout=timeout)
            push_task = asyncio.ensure_future(client.wait_server_push(timeout=timeout))

            try:
                done, _ = await asyncio.wait(
                    {idle_task, push_task}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                if not push_task.done():
                    push_task.cancel()

            if push_task in done and not push_task.cancelled():
                try:
                    push = push_task.result()
                except asyncio.TimeoutError:
                    push = None
            else:
                # IDLE finished before any push arrived
                idle_response = idle_task.result()
                if idle_response.result != "OK":
                    raise IMAPConnectionError(f"IDLE ended by server: {idle_response.lines}")
                push = None

            if client.has_pending_idle():
                client.idle_done()
            idle_response = await asyncio.wait_for(idle_task, timeout=self.TIMEOUT)
            if idle_response.result != "OK":
                raise IMAPConnectionError(f"IDLE failed: {idle_response.lines}")

        except IMAPError:
            raise
        except asyncio.TimeoutError as e:
            raise IMAPConnectionError("Timed out ending IDLE") from e
        except Exception as e:
            raise IMAPConnectionError(f"IDLE wait error: {e}") from e

        if not push or push == aioimaplib.STOP_WAIT_SERVER_PUSH:
            return []

        notifications = []
        for line in push:
            if isinstance(line, (bytes, bytearray)):
                line = line.decode("utf-8", errors="replace")
            notifications.append(str(line))
        logger.debug(f"IDLE notifications: {notifications}")
        return notifications

    async def noop(self) -> None:
        """
        Send NOOP to keep the connection alive.

        Raises:
            IMAPConnectionError: If the server does not answer OK.
        """
        client = self._require_client()
        try:
            response = await asyncio.wait_for(client.noop(), timeout=self.TIMEOUT)
        except Exception as e:
            raise IMAPConnectionError(f"NOOP failed: {e}") from e

        if response.result != "OK":
            raise IMAPConnectionError(f"NOOP rejected: {response.lines}")


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when the connection to the IMAP server fails or is lost."""
    pass


class IMAPAuthenticationError(IMAPError):
    """Raised when IMAP authentication fails."""
    pass
