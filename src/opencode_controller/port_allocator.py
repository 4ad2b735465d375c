"""Port allocation for the OpenCode server.

Asks the OS for an ephemeral port instead of scanning a fixed range.
"""

import logging
import socket

from .errors import AllocationError

logger = logging.getLogger("opencode_controller.port_allocator")

DEFAULT_HOST = "127.0.0.1"


class PortAllocator:
    """Hands out free ephemeral ports.

    The port is released again before it is returned, so another process may
    claim it before the server binds. That window is accepted, not retried.
    """

    def __init__(self, host: str = DEFAULT_HOST):
        self.host = host

    @staticmethod
    def is_port_available(port: int, host: str = DEFAULT_HOST) -> bool:
        """Check if a port is actually available on the system.

        Args:
            port: Port number to check
            host: Interface to test the bind on

        Returns:
            True if port is available for binding
        """
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                s.bind((host, port))
                return True
        except OSError:
            return False

    def allocate(self) -> int:
        """Allocate a free port chosen by the OS.

        Returns:
            Allocated port number

        Raises:
            AllocationError: If the bind fails or the bound address cannot be read
        """
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind((self.host, 0))
                s.listen(1)
                address = s.getsockname()
        except OSError as e:
            raise AllocationError(f"Failed to get port: {e}") from e

        if not isinstance(address, tuple) or len(address) < 2 or not address[1]:
            raise AllocationError(f"Failed to get port: unexpected address {address!r}")

        port = int(address[1])
        logger.debug(f"Allocated port {port}")
        return port
