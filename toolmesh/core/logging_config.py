"""
Logging Configuration Module.

Centralized logging setup for toolmesh. Library modules only ever call
``logging.getLogger(__name__)``; an entry point (the stdio server, the HTTP
app, an embedding application) calls ``setup_logging`` once.

Features:
- Configurable log levels per module
- Console and optional file logging
- Simple, detailed and JSON-ish formats
"""

import logging
from pathlib import Path
from typing import Optional, TextIO, Union

# Define log formats
SIMPLE_FORMAT = "%(levelname)s - %(name)s - %(message)s"

DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(funcName)s() - %(message)s"

JSON_FORMAT = (
    '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
    '"module": "%(filename)s", "function": "%(funcName)s", "line": %(lineno)d, '
    '"message": "%(message)s"}'
)

LOG_FILE_NAME = "toolmesh.log"

# Module-specific log levels
MODULE_LOG_LEVELS = {
    # Core modules
    "toolmesh.runtime": "DEBUG",
    "toolmesh.policy": "DEBUG",
    "toolmesh.capabilities": "INFO",
    "toolmesh.protocol": "DEBUG",
    "toolmesh.protocol.transport": "INFO",
    "toolmesh.server": "INFO",
    # Third-party libraries (reduce noise)
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "asyncio": "WARNING",
    "uvicorn": "INFO",
    "uvicorn.access": "INFO",
}


def _format_for(name: str) -> str:
    if name == "json":
        return JSON_FORMAT
    if name == "simple":
        return SIMPLE_FORMAT
    return DETAILED_FORMAT


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file_dir: Optional[Union[str, Path]] = None,
    *,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL); INFO by default
        log_format: Format name (simple, detailed, json); detailed by default
        log_file_dir: Directory for ``toolmesh.log``; no file logging when None
        stream: Console stream; stderr by default (stdout carries protocol frames
            for the stdio server)
    """
    level = (log_level or "INFO").upper()
    fmt = log_format or "detailed"
    formatter = logging.Formatter(_format_for(fmt), datefmt="%Y-%m-%d %H:%M:%S")

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all levels, filter at handler level

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file_dir is not None:
        directory = Path(log_file_dir)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(directory / LOG_FILE_NAME)
        file_handler.setLevel(logging.DEBUG)  # Always log DEBUG to file
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for module_name, module_level in MODULE_LOG_LEVELS.items():
        logging.getLogger(module_name).setLevel(module_level)

    root_logger.info(f"Logging configured: level={level}, format={fmt}, file_logging={log_file_dir is not None}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The module name (typically __name__)

    Returns:
        A configured logger instance
    """
    return logging.getLogger(name)
