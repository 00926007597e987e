# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the idlewatch test suite.
# =============================================================================

import logging
from pathlib import Path

import pytest
import pytest_asyncio

from idlewatch.config import Config
from idlewatch.core import Encryption, MailboxCredential
from idlewatch.storage import Database, Repository


@pytest.fixture(autouse=True)
def isolated_xdg(tmp_path, monkeypatch):
    """Point every XDG directory into the test's temp dir."""
    for var, name in (
        ("XDG_CONFIG_HOME", "config"),
        ("XDG_DATA_HOME", "data"),
        ("XDG_STATE_HOME", "state"),
    ):
        monkeypatch.setenv(var, str(tmp_path / "xdg" / name))


@pytest.fixture
def sample_mailbox():
    """An eligible IMAP mailbox with its secret resolved."""
    return MailboxCredential(
        id=1,
        email_address="support@example.com",
        host="imap.example.com",
        port=993,
        encryption=Encryption.SSL,
        username="support@example.com",
        secret="s3cret-app-password",
    )


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "idlewatch.db"


@pytest.fixture
def config_file(tmp_path, db_path) -> Path:
    """A config file whose database lives in the temp dir."""
    config = Config()
    config.storage.database = str(db_path)
    config.manager.reconcile_interval = 0.05
    path = tmp_path / "config.toml"
    config.save(path)
    return path


@pytest_asyncio.fixture
async def repository(db_path):
    """A Repository over a fresh SQLite database."""
    async with Database(db_path) as db:
        yield Repository(db)


@pytest.fixture
def restore_logging():
    """Undo logging.basicConfig(force=True) done by the CLI."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
