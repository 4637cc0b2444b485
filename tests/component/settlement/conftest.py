"""
Settlement Service Component Test Fixtures

Wires the settlement engine around the in-memory mocks in mocks.py and
provides helpers that seed campaigns, saved cards and paid milestones.
"""

import pytest

from core.config import SettlementConfig
from microservices.settlement_service.factory import build_settlement_components
from microservices.settlement_service.models import GatewayName
from tests.contracts.settlement.data_contract import SettlementTestDataFactory

from .mocks import MockEventBus, MockGateway, MockSettlementRepository


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def data_factory():
    """Provide test data factory"""
    return SettlementTestDataFactory


@pytest.fixture
def settlement_config():
    """Engine configuration with immediate staleness and no settings cache"""
    return SettlementConfig(
        sweep_enabled=False,
        max_concurrent_charges=2,
        auto_charge_enabled=True,
        max_charge_attempts=3,
        transaction_stale_seconds=0,
        withdrawal_stale_seconds=0,
        auto_release_payouts=True,
        auto_withdrawal_enabled=False,
        settings_cache_ttl_seconds=0,
        supported_currencies=["GBP", "NGN"],
        charge_routes={"GBP": "stripe", "NGN": "paystack"},
        payout_routes={"GBP": "truelayer", "NGN": "paystack"},
    )


@pytest.fixture
def mock_repository():
    return MockSettlementRepository()


@pytest.fixture
def mock_event_bus():
    return MockEventBus()


@pytest.fixture
def stripe_gateway():
    return MockGateway(GatewayName.STRIPE, {"GBP", "USD", "EUR"})


@pytest.fixture
def truelayer_gateway():
    return MockGateway(GatewayName.TRUELAYER, {"GBP", "EUR"})


@pytest.fixture
def paystack_gateway():
    return MockGateway(GatewayName.PAYSTACK, {"NGN"})


@pytest.fixture
def gateways(stripe_gateway, truelayer_gateway, paystack_gateway):
    return {
        GatewayName.STRIPE: stripe_gateway,
        GatewayName.TRUELAYER: truelayer_gateway,
        GatewayName.PAYSTACK: paystack_gateway,
    }


@pytest.fixture
def components(mock_repository, gateways, settlement_config, mock_event_bus):
    """Settlement engine wired around the mocks"""
    return build_settlement_components(mock_repository, gateways, settlement_config, event_bus=mock_event_bus)


@pytest.fixture
def seed_campaign(components, data_factory):
    """Register a campaign (default 120000 GBP in three parts) and return (campaign, milestones)"""

    async def _seed(**overrides):
        campaign = data_factory.make_campaign(**overrides)
        milestones = await components.milestone_engine.register_campaign(campaign)
        return campaign, milestones

    return _seed


@pytest.fixture
def save_card(mock_repository, data_factory):
    """Store a default saved payment method for a payer"""

    async def _save(user_id: str, gateway: GatewayName = GatewayName.STRIPE):
        return await mock_repository.create_payment_method(
            data_factory.make_payment_method(user_id=user_id, gateway=gateway)
        )

    return _save


@pytest.fixture
def paid_milestone(components, seed_campaign, save_card):
    """Campaign whose first milestone has been charged and paid"""

    async def _pay(**overrides):
        campaign, milestones = await seed_campaign(**overrides)
        await save_card(campaign.brand_id)
        await components.orchestrator.charge_milestone(milestones[0].id)
        return campaign, milestones

    return _pay
