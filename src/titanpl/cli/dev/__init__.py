"""The `titan dev` hot-reload loop."""

from titanpl.cli.dev.coordinator import DevLoopCoordinator
from titanpl.cli.dev.supervisor import ProcessSupervisor, ServerProcessHandle
from titanpl.cli.dev.typecheck import TypeHealthMonitor
from titanpl.cli.dev.watcher import ChangeWatcher

__all__ = [
    "ChangeWatcher",
    "DevLoopCoordinator",
    "ProcessSupervisor",
    "ServerProcessHandle",
    "TypeHealthMonitor",
]
