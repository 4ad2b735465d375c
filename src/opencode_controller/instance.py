"""OpenCode server instance data model."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from opencode_bridge.opencode_client import OpenCodeClient, OpenCodeClientV2


class InstanceState(str, Enum):
    """State of the managed OpenCode server."""

    STARTING = "starting"  # Process spawned, waiting for HTTP API
    READY = "ready"        # HTTP API answered, handed to callers
    STOPPING = "stopping"  # Kill requested via stop()
    EXITED = "exited"      # Process reported exit


@dataclass(eq=False)
class ServerInstance:
    """The one running `opencode serve` process and its API clients.

    Compared by identity: a restart always produces a new instance.
    """

    # asyncio Process handle, owned by the ProcessManager
    process: asyncio.subprocess.Process = field(repr=False)

    # Port the server was told to bind
    port: int

    # Working directory the server runs against
    directory: Path

    # Primary and secondary API clients bound to `url`
    client: Optional["OpenCodeClient"] = field(default=None, repr=False)
    client_v2: Optional["OpenCodeClientV2"] = field(default=None, repr=False)

    state: InstanceState = InstanceState.STARTING
    started_at: datetime = field(default_factory=datetime.now)
    exit_code: Optional[int] = None

    @property
    def url(self) -> str:
        """Get the HTTP API URL for this instance."""
        return f"http://127.0.0.1:{self.port}"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def is_alive(self) -> bool:
        """True until the subprocess reports exit."""
        return self.state != InstanceState.EXITED and self.process.returncode is None

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Summary for logs and status output."""
        return {
            "directory": str(self.directory),
            "port": self.port,
            "pid": self.pid,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "exit_code": self.exit_code,
        }
