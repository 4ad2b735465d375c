"""OpenCode controller daemon.

Keeps one `opencode serve` process alive for a project directory so the
Telegram mirror can talk to it, until SIGINT or SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from opencode_bridge.config import load_config

from .errors import OpenCodeServerError, log_and_format_error, setup_logger
from .instance import ServerInstance
from .process_manager import ProcessManager, RestartPolicy

logger = logging.getLogger("opencode_controller")


class Controller:
    """Owns the process manager for the lifetime of the program."""

    def __init__(self, directory: Path, restart_policy: Optional[RestartPolicy] = None):
        self.directory = directory
        self.process_manager = ProcessManager(
            restart_policy=restart_policy,
            on_instance_change=self._on_instance_change,
        )
        self._shutdown_event = asyncio.Event()

    def _on_instance_change(self, instance: ServerInstance) -> None:
        logger.info(f"Server {instance.state.value}: {instance.to_dict()}")

    def _handle_signal(self) -> None:
        """Handle shutdown signals."""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    async def run(self) -> int:
        """Start the server and block until shutdown. Returns an exit status."""
        config = load_config(self.directory)
        logger.info(
            f"Bot config: token={'set' if config.bot_token else 'missing'}, "
            f"chat_id={config.chat_id or 'missing'}"
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal)

        try:
            instance = await self.process_manager.start(self.directory)
        except OpenCodeServerError as e:
            message = log_and_format_error("Controller.run", e, directory=self.directory)
            logger.error(message)
            await self.process_manager.shutdown()
            return 1

        logger.info(f"OpenCode API available at {instance.url}")
        await self._shutdown_event.wait()

        logger.info("Stopping controller...")
        await self.process_manager.shutdown()
        logger.info("Controller stopped")
        return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="OpenCode Controller - keep an OpenCode API server running for a project",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the current directory
  opencode-controller

  # Give up after 5 consecutive crashes, backing off from 2s
  opencode-controller ~/src/project --max-restarts 5 --restart-backoff 2

Environment variables:
  OPENCODE_PORT   - Use this port instead of allocating one
  OPENCODE_PATH   - opencode binary (default: ~/.opencode/bin/opencode)
        """,
    )
    parser.add_argument(
        "directory",
        nargs="?",
        type=Path,
        default=Path("."),
        help="Project directory the server runs in (default: current directory)",
    )
    parser.add_argument(
        "--max-restarts",
        type=int,
        default=None,
        help="Stop restarting after this many consecutive crashes (default: unlimited)",
    )
    parser.add_argument(
        "--restart-backoff",
        type=float,
        default=0.0,
        help="Initial delay in seconds before a crash restart, doubled each time (default: 0)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging, including server output",
    )

    return parser.parse_args(argv)


async def async_main(argv: Optional[list[str]] = None) -> int:
    """Async entry point."""
    args = parse_args(argv)

    for name in ("opencode_controller", "opencode_bridge"):
        named_logger = setup_logger(name)
        if args.verbose:
            for handler in named_logger.handlers:
                if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                    handler.setLevel(logging.DEBUG)

    policy = RestartPolicy(max_restarts=args.max_restarts, backoff=args.restart_backoff)
    controller = Controller(args.directory.expanduser(), restart_policy=policy)
    return await controller.run()


def main() -> None:
    """Sync entry point."""
    try:
        raise SystemExit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
