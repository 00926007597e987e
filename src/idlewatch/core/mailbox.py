# =============================================================================
# Mailbox Model
# =============================================================================
# Represents one IMAP mailbox that may be monitored with IDLE.
#
# The mailbox rows are owned by the web application's account store; this
# service only reads them. The secret (password or app token) is NOT stored
# in the database. It is pulled from the system keyring exactly once, when a
# listener starts, and is kept out of every repr and log line.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Encryption(str, Enum):
    """Connection security for an IMAP mailbox."""
    SSL = "ssl"             # Implicit TLS, usually port 993
    STARTTLS = "starttls"   # Plain connection upgraded with STARTTLS, usually 143
    NONE = "none"           # Plaintext (local test servers only)

    @classmethod
    def parse(cls, value: "str | Encryption | None") -> "Encryption":
        """
        Parse an encryption mode from a database/config value.

        Empty values fall back to SSL. "tls" is accepted as an alias for
        SSL since several providers label implicit TLS that way.
        """
        if isinstance(value, Encryption):
            return value
        normalized = (value or "ssl").strip().lower()
        if normalized == "tls":
            return cls.SSL
        if normalized in ("", "plain", "false"):
            return cls.NONE
        return cls(normalized)


@dataclass
class MailboxCredential:
    """
    Everything needed to open an IDLE session for one mailbox.

    Attributes:
        id: Primary key in the mailbox store.
        email_address: Address of the mailbox. Used to tag log lines.
        host: IMAP server hostname.
        port: IMAP server port (993 for SSL, 143 for STARTTLS).
        encryption: Connection security mode.
        validate_cert: Whether to verify the server's TLS certificate.
        username: IMAP login. Falls back to email_address when empty.
        secret: Password or token. Never logged, never part of repr.
        provider: Provider type. Only "imap" mailboxes get listeners.
        is_active: Whether the mailbox is switched on.
        deleted_at: Soft-delete timestamp, None while the mailbox exists.
        last_sync_at: When a sync was last dispatched for this mailbox.
    """

    id: int
    email_address: str
    host: str = ""
    port: int = 993
    encryption: Encryption = Encryption.SSL
    validate_cert: bool = True
    username: str = ""
    secret: str | None = field(default=None, repr=False)
    provider: str = "imap"
    is_active: bool = True
    deleted_at: datetime | None = None
    last_sync_at: datetime | None = None

    def __post_init__(self) -> None:
        self.encryption = Encryption.parse(self.encryption)
        if not self.username:
            self.username = self.email_address

    @property
    def is_eligible(self) -> bool:
        """A mailbox gets a listener iff it is active, not deleted and IMAP."""
        return (
            self.is_active
            and self.deleted_at is None
            and (self.provider or "").lower() == "imap"
        )

    @property
    def keyring_service(self) -> str:
        """
        Keyring service name holding this mailbox's secret.

        Operators can manage it with the keyring CLI:
            keyring set idlewatch:42 user@example.com
        """
        return f"idlewatch:{self.id}"

    def __str__(self) -> str:
        return f"{self.email_address} (ID: {self.id})"
