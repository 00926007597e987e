# =============================================================================
# idlewatch Command Line
# =============================================================================
# Entry points for the three processes this service runs as:
#
#   idlewatch listen <mailbox-id>
#       One IDLE listener for one mailbox. Normally spawned by the manager.
#
#   idlewatch manager [--mailbox-id ID]... [--all]
#       Supervisor: one listener process per eligible mailbox.
#
#   idlewatch dispatch-sync [--mailbox-id ID]... [--all] [--force]
#       Queue polling syncs (run from cron as a fallback to IDLE).
#
# Exit codes:
#   0 - graceful stop / nothing to do
#   1 - fatal IMAP failure in a listener
#   2 - configuration error (bad config, unknown or ineligible mailbox,
#       missing secret)
# =============================================================================

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import TextIO

from idlewatch import __version__, __app_name__
from idlewatch.config import Config, ConfigError, print_paths
from idlewatch.dispatch import dispatch_polling_sync
from idlewatch.imap import IdleListener
from idlewatch.storage import Database, Repository, StorageError
from idlewatch.supervisor import IdleManager, ProcessSpawner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Listener output is re-logged by the manager, which adds its own timestamp
WORKER_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


# =============================================================================
# Logging
# =============================================================================

def setup_logging(
    config: Config,
    debug: bool = False,
    stream: TextIO | None = None,
    fmt: str = LOG_FORMAT,
    use_file: bool = True,
) -> None:
    """
    Configure the root logger from the [logging] config section.

    Args:
        config: Loaded configuration.
        debug: Force DEBUG level.
        stream: Where console output goes (default stderr).
        fmt: Log line format.
        use_file: Also write to the configured log file, if any.
    """
    level = logging.DEBUG if debug else logging.getLevelName(config.logging.level)
    if not isinstance(level, int):
        level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]

    log_file = config.log_file_path() if use_file else None
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)

    # aioimaplib logs every protocol line at DEBUG
    if not debug:
        logging.getLogger("aioimaplib").setLevel(logging.WARNING)


# =============================================================================
# Commands
# =============================================================================

async def run_listener(config: Config, mailbox_id: int) -> int:
    """Run one IDLE listener until SIGTERM/SIGINT or a fatal error."""
    async with Database(config.database_path()) as db:
        repository = Repository(db)

        try:
            mailbox = await repository.require_eligible_mailbox(mailbox_id)
            mailbox = await repository.resolve_secret(mailbox)
        except StorageError as e:
            logger.error(f"Invalid IMAP mailbox: {e}")
            return EXIT_CONFIG

        listener = IdleListener(
            mailbox,
            repository.enqueue_incremental_sync,
            folder=config.listener.folder,
            idle_timeout=config.listener.idle_timeout,
            reconnect_delay=config.listener.reconnect_delay,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, listener.stop)

        return await listener.run()


async def run_manager(
    config: Config,
    mailbox_ids: list[int],
    all_mailboxes: bool,
    worker_args: list[str],
) -> int:
    """Run the IDLE manager until SIGTERM/SIGINT."""
    async with Database(config.database_path()) as db:
        manager = IdleManager(
            Repository(db),
            ProcessSpawner(worker_args, stop_timeout=config.manager.stop_timeout),
            mailbox_ids=mailbox_ids,
            all_mailboxes=all_mailboxes,
            reconcile_interval=config.manager.reconcile_interval,
        )
        manager.install_signal_handlers()
        return await manager.run()


async def run_dispatch_sync(
    config: Config,
    mailbox_ids: list[int],
    all_mailboxes: bool,
    force: bool,
) -> int:
    """Queue polling syncs once and exit."""
    async with Database(config.database_path()) as db:
        result = await dispatch_polling_sync(
            Repository(db),
            mailbox_ids=mailbox_ids,
            all_mailboxes=all_mailboxes,
            force=force,
        )
    logger.info(
        f"Dispatched {len(result.dispatched)} sync(s), skipped {len(result.skipped)}"
    )
    return EXIT_OK


# =============================================================================
# CLI Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all subcommands."""
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="IMAP IDLE listeners and their supervisor",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    listen = commands.add_parser("listen", help="Listen for new email on one mailbox using IMAP IDLE")
    listen.add_argument("mailbox_id", type=int, help="The mailbox ID to listen to")

    manager = commands.add_parser("manager", help="Manage IMAP IDLE listeners for all mailboxes")
    manager.add_argument(
        "--mailbox-id",
        dest="mailbox_ids",
        type=int,
        action="append",
        default=[],
        metavar="ID",
        help="Specific mailbox ID to listen to (repeatable)",
    )
    manager.add_argument("--all", action="store_true", help="Listen to all IMAP mailboxes")

    dispatch = commands.add_parser("dispatch-sync", help="Queue polling syncs for IMAP mailboxes")
    dispatch.add_argument(
        "--mailbox-id",
        dest="mailbox_ids",
        type=int,
        action="append",
        default=[],
        metavar="ID",
        help="Specific mailbox ID to sync (repeatable)",
    )
    dispatch.add_argument("--all", action="store_true", help="Sync all IMAP mailboxes")
    dispatch.add_argument(
        "--force",
        action="store_true",
        help="Sync even if recently synced",
    )

    return parser


def worker_cli_args(args: argparse.Namespace) -> list[str]:
    """Global options the manager forwards to its listener processes."""
    forwarded = []
    if args.config:
        forwarded += ["--config", str(args.config.resolve())]
    if args.debug:
        forwarded.append("--debug")
    return forwarded


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for idlewatch.

    Returns:
        Exit code (see module header).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    if args.paths:
        print_paths(config)
        return EXIT_OK

    if args.command is None:
        parser.print_help()
        return EXIT_CONFIG

    if args.command == "listen":
        # Listener output is captured line by line by the manager
        setup_logging(
            config, args.debug, stream=sys.stdout, fmt=WORKER_LOG_FORMAT, use_file=False
        )
        return asyncio.run(run_listener(config, args.mailbox_id))

    setup_logging(config, args.debug)

    if args.command == "manager":
        return asyncio.run(
            run_manager(config, args.mailbox_ids, args.all, worker_cli_args(args))
        )

    return asyncio.run(
        run_dispatch_sync(config, args.mailbox_ids, args.all, args.force)
    )


if __name__ == "__main__":
    sys.exit(main())
