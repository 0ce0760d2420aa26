"""
FrameDiffusion Utilities Package
Logging, configuration files and host hardware detection.
"""

from .logging import (
    LogConfig,
    StructuredLogger,
    configure_logging,
    get_logger,
)

from .config_file import (
    ConfigFileManager,
    DEFAULT_CONFIG_TEMPLATE,
)

from .hardware import (
    HostInfo,
    ConcurrencyProfile,
    get_host_info,
    recommend_concurrency,
    resolve_dispatch_settings,
)

__all__ = [
    "LogConfig",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "ConfigFileManager",
    "DEFAULT_CONFIG_TEMPLATE",
    "HostInfo",
    "ConcurrencyProfile",
    "get_host_info",
    "recommend_concurrency",
    "resolve_dispatch_settings",
]
