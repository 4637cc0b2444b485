"""
Settlement Service Integration Test Fixtures

Connects a SettlementRepository to the PostgreSQL database named by the
POSTGRES_* environment, applies the settlement migration and empties the
settlement tables before each test. Tests are skipped when the database
cannot be reached.
"""

import os
import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

# Add paths for imports
_current_dir = os.path.dirname(os.path.abspath(__file__))
_project_root = os.path.join(_current_dir, "../../..")
sys.path.insert(0, _project_root)

from core.config import InfraConfig
from core.postgres_client import PostgresClient
from microservices.settlement_service.settlement_repository import SettlementRepository
from tests.contracts.settlement.data_contract import SettlementTestDataFactory

MIGRATION = (
    Path(_project_root) / "microservices" / "settlement_service" / "migrations" / "001_create_settlement_schema.sql"
)

# Reverse dependency order; PlatformSettings keeps its seeded defaults
SETTLEMENT_TABLES = [
    "WebhookEvents",
    "Withdrawals",
    "InfluencerPayouts",
    "Transactions",
    "PaymentMilestones",
    "Campaigns",
    "InfluencerBankAccounts",
    "PaymentMethods",
]


@pytest_asyncio.fixture(scope="function")
async def settlement_db() -> AsyncGenerator[PostgresClient, None]:
    """
    PostgreSQL client for the settlement schema

    Creates the schema from the migration if needed and truncates the
    settlement tables, so every test starts from an empty ledger.
    """
    db = PostgresClient("settlement_service_tests", config=InfraConfig.from_env())
    try:
        await db.connect()
    except Exception as e:
        pytest.skip(f"Database connection not available: {e}")

    try:
        await db.execute(MIGRATION.read_text())
        tables = ", ".join(f'settlement."{table}"' for table in SETTLEMENT_TABLES)
        await db.execute(f"TRUNCATE TABLE {tables} CASCADE")
        yield db
    finally:
        await db.close()


@pytest.fixture
def repository(settlement_db) -> SettlementRepository:
    return SettlementRepository(settlement_db)


@pytest.fixture(scope="session")
def settlement_factory():
    """Provide SettlementTestDataFactory for generating test data"""
    return SettlementTestDataFactory()


@pytest.fixture
def seeded_campaign(repository, settlement_factory):
    """Store a 120000 GBP campaign with three 40000 milestones; returns (campaign, milestones)"""

    async def _seed(**overrides):
        campaign = await repository.create_campaign(settlement_factory.make_campaign(**overrides))
        milestones = await repository.create_milestones(
            [
                settlement_factory.make_milestone(campaign, milestone_number=number, title=f"Milestone {number}")
                for number in (1, 2, 3)
            ]
        )
        return campaign, milestones

    return _seed
