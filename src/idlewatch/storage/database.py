# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# One SQLite file shared by the manager and every listener process.
#
# Tables:
#   - mailboxes: IMAP mailboxes owned by the web application's account store
#   - sync_jobs: Incremental-sync requests waiting for a queue worker
#
# Every process opens its own connection. WAL mode lets listeners append
# sync jobs while the manager reads mailboxes.
#
# Migrations are applied in order, one transaction per step, and the
# schema_version row records the last step that ran.
# =============================================================================

from pathlib import Path

import aiosqlite


# Seconds SQLite waits on a locked database before raising
BUSY_TIMEOUT = 30


# Each entry upgrades the schema from version N-1 to version N
MIGRATIONS: list[str] = [
    # 1: mailboxes and the sync queue
    """
    CREATE TABLE IF NOT EXISTS mailboxes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email_address TEXT NOT NULL,
        provider TEXT NOT NULL DEFAULT 'imap',
        imap_host TEXT NOT NULL DEFAULT '',
        imap_port INTEGER NOT NULL DEFAULT 993,
        imap_encryption TEXT NOT NULL DEFAULT 'ssl',
        imap_validate_cert INTEGER NOT NULL DEFAULT 1,
        imap_username TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        deleted_at TEXT,
        last_sync_at TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS sync_jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        mailbox_id INTEGER NOT NULL REFERENCES mailboxes(id) ON DELETE CASCADE,
        quick INTEGER NOT NULL DEFAULT 1,
        "limit" INTEGER NOT NULL DEFAULT 5,
        fetch_all INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending',
        queued_at TEXT NOT NULL
    );
    """,
    # 2: lookups used by discovery and the queue workers
    """
    CREATE INDEX IF NOT EXISTS idx_mailboxes_eligible
        ON mailboxes(provider, is_active, deleted_at);
    CREATE INDEX IF NOT EXISTS idx_sync_jobs_pending
        ON sync_jobs(status, id);
    """,
]

SCHEMA_VERSION = len(MIGRATIONS)


class Database:
    """
    Owns the aiosqlite connection for one process.

    Usage:
        >>> async with Database(path) as db:
        ...     async with db.conn.execute("SELECT id FROM mailboxes") as cursor:
        ...         rows = await cursor.fetchall()

    Attributes:
        db_path: Location of the SQLite file (created on first connect).
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open the connection, set pragmas and bring the schema up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT)

        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.execute("PRAGMA journal_mode = WAL")
        await self._migrate()

    async def close(self) -> None:
        if self._connection is not None:
            connection, self._connection = self._connection, None
            await connection.close()

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        The open connection.

        Raises:
            RuntimeError: If connect() has not been called.
        """
        if self._connection is None:
            raise RuntimeError(f"Database {self.db_path} is not open")
        return self._connection

    async def schema_version(self) -> int:
        """Last migration applied to this database (0 for a new file)."""
        await self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
        )
        async with self.conn.execute("SELECT MAX(version) FROM schema_version") as cursor:
            row = await cursor.fetchone()
        return row[0] or 0

    async def _migrate(self) -> None:
        """Apply every migration newer than the stored schema version."""
        current = await self.schema_version()

        for version, script in enumerate(MIGRATIONS[current:], start=current + 1):
            await self.conn.executescript(script)
            await self.conn.execute("DELETE FROM schema_version")
            await self.conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            await self.conn.commit()
