"""Error handling utilities for the OpenCode controller."""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from pythonjsonlogger import jsonlogger


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DIRECTORY = "DIR"
    PORT = "PORT"
    SPAWN = "SPAWN"
    READY = "READY"
    GENERAL = "GEN"


class OpenCodeServerError(Exception):
    """Base class for failures while managing the OpenCode server."""

    category = ErrorCategory.GENERAL


class DirectoryError(OpenCodeServerError):
    """The requested working directory cannot be used."""

    category = ErrorCategory.DIRECTORY

    def __init__(self, directory: Union[str, Path]):
        self.directory = str(directory)
        super().__init__(f"Directory not accessible: {self.directory}")


class PortError(OpenCodeServerError):
    """No usable port for the server."""

    category = ErrorCategory.PORT


class AllocationError(PortError):
    """The OS refused to hand out an ephemeral port."""


class SpawnError(OpenCodeServerError):
    """The OS failed to create the server process."""

    category = ErrorCategory.SPAWN

    def __init__(self, command: str, directory: Union[str, Path], reason: str):
        self.command = command
        self.directory = str(directory)
        super().__init__(f"Failed to spawn {command} in {self.directory}: {reason}")


class ReadinessTimeout(OpenCodeServerError):
    """The server process never answered its health endpoint."""

    category = ErrorCategory.READY

    def __init__(self, port: int, attempts: int):
        self.port = port
        self.attempts = attempts
        super().__init__(
            f"Server did not start on port {port} after {attempts} attempts"
        )


def setup_logger(name: str = "opencode_controller") -> logging.Logger:
    """Set up and configure the logger with JSON file logging.

    Args:
        name: Logger name

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)

    # Console handler with standard format
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
    )
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File handler with JSON format for structured error logging
    log_dir = Path(
        os.environ.get("OPENCODE_CONTROLLER_LOG_DIR", "~/.local/share/opencode_controller")
    ).expanduser()
    log_file_path = log_dir / "controller_errors.log"

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path, mode="a")
        file_handler.setLevel(logging.ERROR)
        json_formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
        file_handler.setFormatter(json_formatter)
        logger.addHandler(file_handler)
    except OSError:
        # If we can't write to the log file, just use console
        pass

    return logger


logger = logging.getLogger("opencode_controller.errors")


def log_and_format_error(
    function_name: str,
    error: Exception,
    category: Optional[Union[ErrorCategory, str]] = None,
    user_message: Optional[str] = None,
    **context: Any,
) -> str:
    """Centralized error handling function.

    Logs the error with full context and returns a user-friendly message.

    Args:
        function_name: Name of the function where error occurred
        error: The exception that was raised
        category: Error category for the error code; taken from the
            exception when it is an OpenCodeServerError
        user_message: Optional custom user-facing message
        **context: Additional context to log (e.g., directory="/tmp/proj")

    Returns:
        User-friendly error message with error code
    """
    if category is None:
        category = getattr(error, "category", ErrorCategory.GENERAL)

    if isinstance(category, ErrorCategory):
        prefix_str = category.value
    else:
        prefix_str = str(category)

    # Stable across runs, unlike hash() on str
    checksum = sum(ord(ch) * (i + 1) for i, ch in enumerate(function_name))
    error_code = f"{prefix_str}-ERR-{checksum % 1000:03d}"

    context_str = ", ".join(f"{k}={v}" for k, v in context.items())

    log_message = f"Error in {function_name}"
    if context_str:
        log_message += f" ({context_str})"
    log_message += f" - Code: {error_code}"

    logger.error(log_message, exc_info=error)

    if user_message:
        return f"{user_message} (code: {error_code})"

    return f"{error} (code: {error_code})"
