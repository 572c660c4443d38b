"""Core infrastructure: logging, configuration and errors."""

from mender.core.config import MenderConfig, load_config
from mender.core.errors import MenderError
from mender.core.logging import configure_logging, get_logger

__all__ = ["MenderConfig", "MenderError", "configure_logging", "get_logger", "load_config"]
