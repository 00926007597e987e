"""Tests for the command line entry points."""

import argparse
import asyncio
import logging
from pathlib import Path

import keyring
import pytest

from idlewatch import __version__
from idlewatch.app import (
    EXIT_CONFIG,
    EXIT_FATAL,
    EXIT_OK,
    build_parser,
    main,
    setup_logging,
    worker_cli_args,
)
from idlewatch.config import Config
from idlewatch.core import MailboxCredential
from idlewatch.imap import client as client_module
from idlewatch.storage import Database, Repository


def seed(db_path, *mailboxes):
    async def _seed():
        async with Database(db_path) as db:
            repository = Repository(db)
            for mailbox in mailboxes:
                await repository.save_mailbox(mailbox)

    asyncio.run(_seed())


def pending(db_path):
    async def _pending():
        async with Database(db_path) as db:
            return await Repository(db).pending_sync_requests()

    return asyncio.run(_pending())


def imap_mailbox(id, **kwargs):
    return MailboxCredential(id=id, email_address=f"box{id}@example.com", host="imap.example.com", **kwargs)


# =============================================================================
# Parser
# =============================================================================

def test_parser_subcommands():
    parser = build_parser()

    args = parser.parse_args(["listen", "7"])
    assert args.command == "listen" and args.mailbox_id == 7

    args = parser.parse_args(["manager", "--mailbox-id", "1", "--mailbox-id", "3"])
    assert args.mailbox_ids == [1, 3] and not args.all

    args = parser.parse_args(["--debug", "dispatch-sync", "--all", "--force"])
    assert args.debug and args.all and args.force and args.mailbox_ids == []


def test_version(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])
    assert excinfo.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_worker_cli_args_forward_config_and_debug(tmp_path):
    args = argparse.Namespace(config=Path("relative.toml"), debug=True)
    forwarded = worker_cli_args(args)
    assert forwarded[0] == "--config"
    assert Path(forwarded[1]).is_absolute()
    assert forwarded[2] == "--debug"

    assert worker_cli_args(argparse.Namespace(config=None, debug=False)) == []


# =============================================================================
# main()
# =============================================================================

def test_paths(config_file, capsys):
    assert main(["--config", str(config_file), "--paths"]) == EXIT_OK
    out = capsys.readouterr().out
    assert str(config_file) in out


def test_missing_config_file(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "missing.toml"), "manager"]) == EXIT_CONFIG
    assert "Config error" in capsys.readouterr().err


def test_no_command_prints_help(capsys):
    assert main([]) == EXIT_CONFIG
    assert "listen" in capsys.readouterr().out


def test_listen_unknown_mailbox(config_file, restore_logging, capsys):
    assert main(["--config", str(config_file), "listen", "404"]) == EXIT_CONFIG
    assert "Invalid IMAP mailbox" in capsys.readouterr().out


def test_listen_ineligible_mailbox(config_file, db_path, restore_logging):
    seed(db_path, imap_mailbox(5, is_active=False))
    assert main(["--config", str(config_file), "listen", "5"]) == EXIT_CONFIG


def test_listen_missing_secret(config_file, db_path, restore_logging, monkeypatch):
    seed(db_path, imap_mailbox(1))
    monkeypatch.setattr(keyring, "get_password", lambda service, username: None)
    assert main(["--config", str(config_file), "listen", "1"]) == EXIT_CONFIG


def test_listen_unreachable_server_is_fatal(config_file, db_path, restore_logging, monkeypatch, capsys):
    seed(db_path, imap_mailbox(1))
    monkeypatch.setattr(keyring, "get_password", lambda service, username: "app-password")

    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(client_module.aioimaplib, "IMAP4_SSL", refuse)

    assert main(["--config", str(config_file), "listen", "1"]) == EXIT_FATAL
    assert "app-password" not in capsys.readouterr().out


def test_manager_without_mailboxes_exits_cleanly(config_file, restore_logging, capsys):
    assert main(["--config", str(config_file), "manager", "--all"]) == EXIT_OK
    assert "No IMAP mailboxes found to monitor." in capsys.readouterr().err


def test_dispatch_sync_queues_jobs(config_file, db_path, restore_logging):
    seed(db_path, imap_mailbox(1), imap_mailbox(2, provider="gmail"))

    assert main(["--config", str(config_file), "dispatch-sync"]) == EXIT_OK

    [request] = pending(db_path)
    assert request.mailbox_id == 1
    assert request.options.limit == 10


# =============================================================================
# Logging
# =============================================================================

def test_setup_logging_levels(restore_logging):
    config = Config()
    config.logging.level = "WARNING"
    setup_logging(config)
    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("aioimaplib").level == logging.WARNING

    setup_logging(config, debug=True)
    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_writes_log_file(restore_logging):
    config = Config()
    config.logging.file = "idlewatch.log"
    setup_logging(config)

    logging.getLogger("idlewatch.test").warning("hello from the log file")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "hello from the log file" in config.log_file_path().read_text()
