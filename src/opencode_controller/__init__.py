"""OpenCode Controller - supervises the OpenCode API server used by the Telegram mirror."""

from .controller import Controller, main
from .errors import (
    AllocationError,
    DirectoryError,
    OpenCodeServerError,
    PortError,
    ReadinessTimeout,
    SpawnError,
)
from .instance import InstanceState, ServerInstance
from .port_allocator import PortAllocator
from .process_manager import ProcessManager, RestartPolicy
from .readiness import wait_until_ready

__all__ = [
    "Controller",
    "ServerInstance",
    "InstanceState",
    "ProcessManager",
    "RestartPolicy",
    "PortAllocator",
    "wait_until_ready",
    "OpenCodeServerError",
    "DirectoryError",
    "PortError",
    "AllocationError",
    "SpawnError",
    "ReadinessTimeout",
    "main",
]
