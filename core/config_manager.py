#!/usr/bin/env python3
"""
Configuration Manager

Per-service access to the environment driven configuration.

Usage:
    config_manager = ConfigManager("settlement_service")
    config = config_manager.get_service_config()
    host, port = config_manager.discover_service(
        service_name="postgres_service",
        default_host="localhost",
        default_port=5432,
        env_host_key="POSTGRES_HOST",
        env_port_key="POSTGRES_PORT",
    )
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from .config import InfraConfig, LoggingConfig, SettlementConfig

logger = logging.getLogger(__name__)


def _bool(val: str) -> bool:
    return val.lower() == "true"


@dataclass
class ServiceConfig:
    """Identity and runtime flags of a single microservice"""
    service_name: str
    service_port: int = 8000
    service_host: str = "0.0.0.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"


class ConfigManager:
    """Configuration access for one service"""

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.env_prefix = service_name.upper()
        self.infra = InfraConfig.from_env()
        self.logging = LoggingConfig.from_env()
        self._settlement: Optional[SettlementConfig] = None

    def _get(self, key: str, default: str = "") -> str:
        """Service scoped variable first (SETTLEMENT_SERVICE_PORT), then the bare key"""
        return os.getenv(f"{self.env_prefix}_{key}") or os.getenv(key, default)

    def get_service_config(self) -> ServiceConfig:
        """Build the service identity from environment variables"""
        port = self._get("PORT", "8000")
        try:
            service_port = int(port)
        except ValueError:
            logger.warning(f"Invalid port '{port}' for {self.service_name}, using 8000")
            service_port = 8000

        return ServiceConfig(
            service_name=self.service_name,
            service_port=service_port,
            service_host=self._get("HOST", "0.0.0.0"),
            environment=self.logging.environment,
            debug=_bool(self._get("DEBUG", "false")),
            log_level=self._get("LOG_LEVEL", self.logging.log_level),
        )

    def get_settlement_config(self) -> SettlementConfig:
        """Settlement engine configuration (loaded once per manager)"""
        if self._settlement is None:
            self._settlement = SettlementConfig.from_env()
        return self._settlement

    def discover_service(
        self,
        service_name: str,
        default_host: str,
        default_port: int,
        env_host_key: Optional[str] = None,
        env_port_key: Optional[str] = None,
    ) -> Tuple[str, int]:
        """
        Resolve a dependency endpoint.

        Priority: environment variable -> default.

        Returns:
            Tuple of (host, port)
        """
        host = os.getenv(env_host_key) if env_host_key else None
        port_value = os.getenv(env_port_key) if env_port_key else None

        port = default_port
        if port_value:
            try:
                port = int(port_value)
            except ValueError:
                logger.warning(f"Invalid port '{port_value}' for {service_name}, using {default_port}")

        resolved_host = host or default_host
        logger.debug(f"Resolved {service_name} at {resolved_host}:{port}")
        return resolved_host, port

    def print_config_summary(self, show_secrets: bool = False):
        """Log the effective configuration (secrets masked unless requested)"""
        def mask(value: str) -> str:
            if show_secrets or not value:
                return value
            return value[:4] + "****"

        settlement = self.get_settlement_config()
        service = self.get_service_config()
        logger.info(f"=== {self.service_name} configuration ===")
        logger.info(f"  environment: {service.environment} port: {service.service_port} debug: {service.debug}")
        logger.info(f"  postgres: {self.infra.postgres_host}:{self.infra.postgres_port}/{self.infra.postgres_db}")
        logger.info(f"  nats: {self.infra.get_nats_url()}")
        logger.info(
            f"  sweep: enabled={settlement.sweep_enabled} interval={settlement.sweep_interval_seconds}s "
            f"max_attempts={settlement.max_charge_attempts}"
        )
        logger.info(f"  charge routes: {settlement.charge_routes}")
        logger.info(f"  payout routes: {settlement.payout_routes}")
        logger.info(f"  stripe key: {mask(settlement.stripe.secret_key)}")
        logger.info(f"  truelayer client: {mask(settlement.truelayer.client_id)}")
        logger.info(f"  paystack key: {mask(settlement.paystack.secret_key)}")


__all__ = ["ConfigManager", "ServiceConfig"]
