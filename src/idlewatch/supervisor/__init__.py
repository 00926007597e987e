# =============================================================================
# Supervisor Module
# =============================================================================
# Runs and supervises one listener process per eligible mailbox:
#   - ProcessSpawner / ProcessWorker: child processes and their output
#   - IdleManager: restart-on-crash, 60s reconciliation, graceful shutdown
# =============================================================================

from idlewatch.supervisor.manager import IdleManager, ListenerHandle
from idlewatch.supervisor.worker import ProcessSpawner, ProcessWorker, Spawner, Worker

__all__ = [
    "IdleManager",
    "ListenerHandle",
    "ProcessSpawner",
    "ProcessWorker",
    "Spawner",
    "Worker",
]
