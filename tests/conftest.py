"""
Root conftest.py - Global configuration for all test layers.

Test Layers:
    - component/  : Component tests (engine wired to in-memory mocks)
    - unit/       : Unit tests (pure functions, adapters on mock transports)
    - integration/: Repository tests against PostgreSQL (skipped when unreachable or SKIP_DB_TESTS is set)
"""
import os
import sys

import pytest

# Testing environment is set before any service module reads it
os.environ.setdefault("ENV", "testing")
os.environ.setdefault("NATS_ENABLED", "false")

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)


# =============================================================================
# Test Configuration
# =============================================================================

class TestConfig:
    """Centralized test configuration"""

    SETTLEMENT_SERVICE_URL = os.getenv("SETTLEMENT_SERVICE_URL", "http://localhost:8250")

    # Infrastructure
    POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
    NATS_URL = os.getenv("NATS_URL", "nats://localhost:4222")

    # Timeouts
    HTTP_TIMEOUT = 30
    EVENT_WAIT_TIMEOUT = 10


@pytest.fixture(scope="session")
def test_config() -> TestConfig:
    """Provide test configuration"""
    return TestConfig()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "component: Component tests")
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Repository tests against a real PostgreSQL")
    config.addinivalue_line("markers", "requires_db: needs a reachable PostgreSQL")
    config.addinivalue_line("markers", "requires_nats: needs a reachable NATS server")


def pytest_collection_modifyitems(config, items):
    """Skip tests whose infrastructure is switched off"""
    skip_db = pytest.mark.skip(reason="PostgreSQL not available")
    skip_nats = pytest.mark.skip(reason="NATS not available")

    for item in items:
        if "requires_db" in item.keywords and os.getenv("SKIP_DB_TESTS"):
            item.add_marker(skip_db)

        if "requires_nats" in item.keywords and os.getenv("SKIP_NATS_TESTS"):
            item.add_marker(skip_nats)
