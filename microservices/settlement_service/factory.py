"""
Settlement Service Factory

Factory for creating the settlement engine with real dependencies.
This is the ONLY module that imports concrete implementations.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from core.config import SettlementConfig
from core.config_manager import ConfigManager

from .gateways import PaystackGateway, StripeGateway, TrueLayerGateway
from .gateways.selector import GatewaySelector
from .milestone_engine import MilestoneEngine
from .models import GatewayName
from .payment_orchestrator import PaymentOrchestrator
from .payout_engine import PayoutEngine
from .platform_settings import PlatformSettingsService
from .protocols import PaymentGatewayProtocol, SettlementRepositoryProtocol
from .settlement_repository import SettlementRepository
from .settlement_sweep import SettlementSweep
from .webhook_reconciler import WebhookReconciler
from .withdrawal_engine import WithdrawalEngine

logger = logging.getLogger(__name__)


@dataclass
class SettlementComponents:
    """Wired settlement engine"""
    config: SettlementConfig
    repository: SettlementRepositoryProtocol
    selector: GatewaySelector
    settings_service: PlatformSettingsService
    milestone_engine: MilestoneEngine
    payout_engine: PayoutEngine
    withdrawal_engine: WithdrawalEngine
    orchestrator: PaymentOrchestrator
    reconciler: WebhookReconciler
    sweep: SettlementSweep

    async def close(self):
        for gateway in self.selector.gateways.values():
            try:
                await gateway.close()
            except Exception as e:
                logger.warning(f"Failed to close gateway {gateway.name.value}: {e}")


def create_gateways(config: SettlementConfig) -> Dict[GatewayName, PaymentGatewayProtocol]:
    """Adapters for every enabled gateway"""
    gateways: Dict[GatewayName, PaymentGatewayProtocol] = {}
    if config.stripe.enabled:
        gateways[GatewayName.STRIPE] = StripeGateway(config.stripe)
    if config.truelayer.enabled:
        gateways[GatewayName.TRUELAYER] = TrueLayerGateway(config.truelayer)
    if config.paystack.enabled:
        gateways[GatewayName.PAYSTACK] = PaystackGateway(config.paystack)

    logger.info(f"Gateways enabled: {', '.join(g.value for g in gateways) or 'none'}")
    return gateways


def build_settlement_components(
    repository: SettlementRepositoryProtocol,
    gateways: Dict[GatewayName, PaymentGatewayProtocol],
    config: SettlementConfig,
    event_bus=None,
) -> SettlementComponents:
    """
    Wire the engine around a repository and gateway adapters.

    Raises:
        GatewayConfigurationError: routing tables incomplete for the supported currencies
    """
    selector = GatewaySelector(gateways, config)
    selector.validate()

    settings_service = PlatformSettingsService(repository, cache_ttl_seconds=config.settings_cache_ttl_seconds)
    withdrawal_engine = WithdrawalEngine(repository, selector, config, event_bus=event_bus)
    payout_engine = PayoutEngine(
        repository, settings_service, config, event_bus=event_bus, withdrawal_engine=withdrawal_engine
    )
    milestone_engine = MilestoneEngine(repository, settings_service, payout_engine, event_bus=event_bus)
    orchestrator = PaymentOrchestrator(repository, selector, milestone_engine, config, event_bus=event_bus)
    reconciler = WebhookReconciler(selector, orchestrator, withdrawal_engine, repository)
    sweep = SettlementSweep(repository, orchestrator, milestone_engine, withdrawal_engine, config)

    return SettlementComponents(
        config=config,
        repository=repository,
        selector=selector,
        settings_service=settings_service,
        milestone_engine=milestone_engine,
        payout_engine=payout_engine,
        withdrawal_engine=withdrawal_engine,
        orchestrator=orchestrator,
        reconciler=reconciler,
        sweep=sweep,
    )


def create_settlement_service(
    config: Optional[ConfigManager] = None,
    event_bus=None,
) -> SettlementComponents:
    """
    Create the settlement engine with all real dependencies

    Args:
        config: Optional config manager (creates default if not provided)
        event_bus: Optional event bus for event publishing

    Returns:
        Fully wired SettlementComponents (repository not yet connected)
    """
    if config is None:
        config = ConfigManager("settlement_service")

    settlement_config = config.get_settlement_config()
    repository = SettlementRepository()
    gateways = create_gateways(settlement_config)

    return build_settlement_components(repository, gateways, settlement_config, event_bus=event_bus)


__all__ = [
    "SettlementComponents",
    "create_gateways",
    "build_settlement_components",
    "create_settlement_service",
]
