#!/usr/bin/env python3
"""
Service logger bootstrap

Usage:
    logger = setup_service_logger("settlement_service", level="INFO")
"""

import logging
import sys
from typing import Optional

from .config import LoggingConfig

_NOISY_LIBRARIES = ("httpx", "httpcore", "apscheduler", "asyncio", "nats")


def setup_service_logger(
    service_name: str,
    level: Optional[str] = None,
    config: Optional[LoggingConfig] = None,
) -> logging.Logger:
    """
    Configure the root logger for a service and return the service logger.

    Args:
        service_name: Logger name for the service
        level: Overrides LoggingConfig.log_level when given
        config: Logging configuration (loaded from env when omitted)
    """
    config = config or LoggingConfig.from_env()
    log_level = getattr(logging, (level or config.log_level).upper(), logging.INFO)
    formatter = logging.Formatter(config.log_format)

    root = logging.getLogger()
    root.setLevel(log_level)
    # Re-running setup (uvicorn reload) must not stack handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if config.enable_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        root.addHandler(console)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if config.quiet_libraries:
        for name in _NOISY_LIBRARIES:
            logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    return logging.getLogger(service_name)


__all__ = ["setup_service_logger"]
