"""Runtime services brought up on every container start."""

from sandboxer.services.network import NetworkIdentityService
from sandboxer.services.remote_access import RemoteAccessService
from sandboxer.services.state import (
    Action,
    BackendState,
    ServicePhase,
    ServiceReport,
    ServiceStateMachine,
)
from sandboxer.services.watcher import BackgroundWatcher, BackoffSchedule, Supervisor

__all__ = [
    "Action",
    "BackendState",
    "BackgroundWatcher",
    "BackoffSchedule",
    "NetworkIdentityService",
    "RemoteAccessService",
    "ServicePhase",
    "ServiceReport",
    "ServiceStateMachine",
    "Supervisor",
]
