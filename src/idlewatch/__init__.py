# =============================================================================
# idlewatch: IMAP IDLE Listeners and Their Supervisor
# =============================================================================
#
# idlewatch keeps one IMAP IDLE connection open per mailbox, for as long as
# the mailbox is active, and turns "new mail" pushes into incremental-sync
# jobs for the web application's queue workers.
#
# Features:
#   - One isolated listener process per mailbox
#   - Automatic reconnect after lost connections
#   - Restart of crashed listeners, 60s reconciliation with the mailbox store
#   - Graceful shutdown on SIGTERM/SIGINT
#   - XDG Base Directory compliant configuration
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "idlewatch"


# Main entry point - this is what gets called by the 'idlewatch' command
from idlewatch.app import main


__all__ = ["main", "__version__", "__app_name__"]
