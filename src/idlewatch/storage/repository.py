# =============================================================================
# Repository - Data Access Layer
# =============================================================================
# The narrow interface between idlewatch and the web application's data:
#
#   - Mailbox store: which mailboxes exist and which are eligible for IDLE
#   - Secrets: passwords/tokens looked up in the system keyring
#   - Sync queue: incremental-sync requests for the web app's queue workers
#
# All methods are async for non-blocking database access.
# =============================================================================

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

import keyring
from keyring.errors import KeyringError

from idlewatch.core import Encryption, MailboxCredential, SyncOptions, SyncRequest

if TYPE_CHECKING:
    from idlewatch.storage.database import Database

logger = logging.getLogger(__name__)


_MAILBOX_COLUMNS = """
    id, email_address, provider, imap_host, imap_port, imap_encryption,
    imap_validate_cert, imap_username, is_active, deleted_at, last_sync_at
"""

_ELIGIBLE_WHERE = "lower(provider) = 'imap' AND is_active = 1 AND deleted_at IS NULL"


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Repository:
    """
    Data access layer for idlewatch.

    Usage:
        >>> repo = Repository(database)
        >>> mailboxes = await repo.list_eligible_mailboxes()
        >>> mailbox = await repo.resolve_secret(mailboxes[0])
        >>> await repo.enqueue_incremental_sync(mailbox.id, SyncOptions.idle_notification())

    Attributes:
        db: Database instance for executing queries.
    """

    def __init__(self, db: "Database") -> None:
        self.db = db

    # =========================================================================
    # Mailbox Store
    # =========================================================================

    async def list_eligible_mailboxes(
        self,
        mailbox_ids: Iterable[int] | None = None,
    ) -> list[MailboxCredential]:
        """
        Get every mailbox that should have an IDLE listener.

        Eligible = active, not deleted, provider "imap".

        Args:
            mailbox_ids: Restrict to these ids. None = all mailboxes.

        Returns:
            Eligible mailboxes ordered by id (secrets not resolved).
        """
        query = f"SELECT {_MAILBOX_COLUMNS} FROM mailboxes WHERE {_ELIGIBLE_WHERE}"
        params: list[int] = []

        if mailbox_ids is not None:
            ids = sorted({int(i) for i in mailbox_ids})
            if not ids:
                return []
            query += f" AND id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)

        query += " ORDER BY id"

        async with self.db.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        mailboxes = []
        for row in rows:
            try:
                mailboxes.append(self._row_to_mailbox(row))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping mailbox {row[0]} with invalid settings: {e}")
        return mailboxes

    async def get_mailbox(self, mailbox_id: int) -> MailboxCredential | None:
        """
        Get a mailbox by ID, whatever its eligibility.

        Returns:
            MailboxCredential if found, None otherwise.

        Raises:
            MailboxNotFoundError: If the row exists but its settings are invalid.
        """
        async with self.db.conn.execute(
            f"SELECT {_MAILBOX_COLUMNS} FROM mailboxes WHERE id = ?", (mailbox_id,)
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None
        try:
            return self._row_to_mailbox(row)
        except (TypeError, ValueError) as e:
            raise MailboxNotFoundError(f"Mailbox {mailbox_id} has invalid settings: {e}") from e

    async def require_eligible_mailbox(self, mailbox_id: int) -> MailboxCredential:
        """
        Get a mailbox that is allowed to run an IDLE listener.

        Raises:
            MailboxNotFoundError: If the id is unknown, or the mailbox is
                inactive, deleted or not an IMAP mailbox.
        """
        mailbox = await self.get_mailbox(mailbox_id)
        if mailbox is None:
            raise MailboxNotFoundError(f"Mailbox {mailbox_id} does not exist")
        if not mailbox.is_eligible:
            raise MailboxNotFoundError(
                f"Mailbox {mailbox_id} is not an active IMAP mailbox "
                f"(provider={mailbox.provider}, active={mailbox.is_active}, "
                f"deleted={mailbox.deleted_at is not None})"
            )
        return mailbox

    async def save_mailbox(self, mailbox: MailboxCredential) -> MailboxCredential:
        """
        Save a mailbox (insert or update). The secret is never written here.

        A mailbox whose id is not yet in the table is inserted with that id.
        """
        values = (
            mailbox.email_address,
            mailbox.provider,
            mailbox.host,
            mailbox.port,
            mailbox.encryption.value,
            mailbox.validate_cert,
            mailbox.username,
            mailbox.is_active,
            _to_iso(mailbox.deleted_at),
            _to_iso(mailbox.last_sync_at),
        )

        exists = False
        if mailbox.id:
            async with self.db.conn.execute(
                "SELECT 1 FROM mailboxes WHERE id = ?", (mailbox.id,)
            ) as cursor:
                exists = await cursor.fetchone() is not None

        if not exists:
            cursor = await self.db.conn.execute(
                """INSERT INTO mailboxes
                   (id, email_address, provider, imap_host, imap_port, imap_encryption,
                    imap_validate_cert, imap_username, is_active, deleted_at, last_sync_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (mailbox.id or None, *values),
            )
            mailbox.id = cursor.lastrowid
        else:
            await self.db.conn.execute(
                """UPDATE mailboxes SET
                   email_address=?, provider=?, imap_host=?, imap_port=?,
                   imap_encryption=?, imap_validate_cert=?, imap_username=?,
                   is_active=?, deleted_at=?, last_sync_at=?
                   WHERE id=?""",
                (*values, mailbox.id),
            )
        await self.db.conn.commit()
        return mailbox

    async def mark_synced(self, mailbox_id: int, when: datetime | None = None) -> None:
        """Record that a sync was dispatched for a mailbox."""
        when = when or datetime.now(timezone.utc)
        await self.db.conn.execute(
            "UPDATE mailboxes SET last_sync_at = ? WHERE id = ?",
            (_to_iso(when), mailbox_id),
        )
        await self.db.conn.commit()

    def _row_to_mailbox(self, row) -> MailboxCredential:
        """Convert a database row to a MailboxCredential."""
        return MailboxCredential(
            id=row[0],
            email_address=row[1],
            provider=row[2],
            host=row[3],
            port=row[4] or 993,
            encryption=Encryption.parse(row[5]),
            validate_cert=bool(row[6]),
            username=row[7] or "",
            is_active=bool(row[8]),
            deleted_at=_from_iso(row[9]),
            last_sync_at=_from_iso(row[10]),
        )

    # =========================================================================
    # Secrets
    # =========================================================================

    async def resolve_secret(self, mailbox: MailboxCredential) -> MailboxCredential:
        """
        Load the mailbox's secret from the system keyring.

        Raises:
            SecretNotFoundError: If no secret is stored for the mailbox.
        """
        try:
            secret = keyring.get_password(mailbox.keyring_service, mailbox.username)
        except KeyringError as e:
            raise SecretNotFoundError(
                f"Keyring lookup failed for {mailbox.email_address}: {e}"
            ) from e

        if not secret:
            raise SecretNotFoundError(
                f"No secret found in keyring for {mailbox.email_address}. "
                f"Set it with: keyring set {mailbox.keyring_service} {mailbox.username}"
            )

        mailbox.secret = secret
        return mailbox

    # =========================================================================
    # Sync Queue
    # =========================================================================

    async def enqueue_incremental_sync(
        self,
        mailbox_id: int,
        options: SyncOptions,
    ) -> SyncRequest:
        """
        Queue an incremental sync for a mailbox.

        Fire-and-forget: the web application's queue workers pick the job up.
        """
        request = SyncRequest(mailbox_id=mailbox_id, options=options)
        cursor = await self.db.conn.execute(
            """INSERT INTO sync_jobs (mailbox_id, quick, "limit", fetch_all, queued_at)
               VALUES (?, ?, ?, ?, ?)""",
            (mailbox_id, options.quick, options.limit, options.fetch_all,
             _to_iso(request.queued_at)),
        )
        await self.db.conn.commit()
        request.id = cursor.lastrowid
        logger.debug(f"Queued sync job {request.id} for mailbox {mailbox_id}: {options.to_dict()}")
        return request

    async def pending_sync_requests(self, mailbox_id: int | None = None) -> list[SyncRequest]:
        """Get queued sync requests, oldest first."""
        query = """SELECT id, mailbox_id, quick, "limit", fetch_all, queued_at
                   FROM sync_jobs WHERE status = 'pending'"""
        params: tuple = ()
        if mailbox_id is not None:
            query += " AND mailbox_id = ?"
            params = (mailbox_id,)
        query += " ORDER BY id"

        async with self.db.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [
                SyncRequest(
                    id=row[0],
                    mailbox_id=row[1],
                    options=SyncOptions(quick=bool(row[2]), limit=row[3], fetch_all=bool(row[4])),
                    queued_at=_from_iso(row[5]),
                )
                for row in rows
            ]


# =============================================================================
# Exceptions
# =============================================================================

class StorageError(Exception):
    """Base exception for mailbox store errors."""
    pass


class MailboxNotFoundError(StorageError):
    """Raised when a mailbox id is unknown or not eligible for IDLE."""
    pass


class SecretNotFoundError(StorageError):
    """Raised when a mailbox's secret cannot be read from the keyring."""
    pass
