#!/usr/bin/env python3
"""
Core Module for the Settlement Platform

Shared infrastructure used by the microservices in this repository.

COMPONENTS:
    - config/: Environment driven dataclass configuration (logging, infra, settlement)
    - config_manager.py: Per-service configuration access and endpoint discovery
    - logger.py: Service logger bootstrap
    - postgres_client.py: asyncpg pool wrapper
    - nats_client.py: NATS JetStream event bus

USAGE:
    from core.config_manager import ConfigManager

    # Initialize configuration for a service
    config = ConfigManager("settlement_service")
"""

from .config_manager import ConfigManager, ServiceConfig

__all__ = [
    "ConfigManager",
    "ServiceConfig",
]

__version__ = "1.0.0"
