"""
Logging setup for applications embedding PathDB.

The library itself only creates module loggers; call ``setup_logging``
once from the host application to install a handler.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import ObservabilityConfig, StoreConfig


def setup_logging(config: StoreConfig | ObservabilityConfig | None = None) -> None:
    """Configure root logging.

    Args:
        config: Store or observability configuration (defaults if omitted)
    """
    if isinstance(config, StoreConfig):
        observability = config.observability
    else:
        observability = config or ObservabilityConfig()

    level = getattr(logging, observability.log_level.upper(), logging.INFO)

    if observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]
