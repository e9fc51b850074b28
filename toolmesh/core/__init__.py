"""Process-level concerns: settings and logging setup."""

from .config import ToolmeshSettings, load_server_configs
from .logging_config import get_logger, setup_logging

__all__ = ["ToolmeshSettings", "load_server_configs", "get_logger", "setup_logging"]
