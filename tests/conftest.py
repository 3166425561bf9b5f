"""
Root conftest.py - Global fixtures and configuration for all test layers.

Test Layers:
    - api/        : API contract tests (in-process app, in-memory ledger)
    - component/  : Component tests (mocked repository and event bus)
    - unit/       : Unit tests (pure functions, no I/O)
    - contracts/  : Test data factories and request builders
    - fixtures/   : Shared in-memory test doubles
"""
import os
import sys
from typing import Any, Dict, List

import pytest

# Set testing environment BEFORE any service imports read settings
os.environ.setdefault("ENV", "testing")
os.environ.setdefault("NATS_ENABLED", "false")
os.environ.setdefault("LEDGER_SWEEPER_ENABLED", "false")

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)


# =============================================================================
# Assertion Helpers
# =============================================================================

class AssertionHelpers:
    """Custom assertion helpers for tests"""

    @staticmethod
    def assert_has_fields(data: Dict, fields: List[str]):
        """Assert dict has required fields"""
        missing = [f for f in fields if f not in data]
        assert not missing, f"Missing fields: {missing}"

    @staticmethod
    def assert_event_published(events: List[Dict], subject: str, **kwargs) -> Dict[str, Any]:
        """Assert an event was published with expected data"""
        matching = [e for e in events if e.get("subject") == subject]
        assert matching, f"Event '{subject}' not found in {events}"

        if kwargs:
            for event in matching:
                if all(event.get("data", {}).get(k) == v for k, v in kwargs.items()):
                    return event
            assert False, f"No event matched criteria: {kwargs}"

        return matching[0]


@pytest.fixture
def assertions() -> AssertionHelpers:
    """Provide assertion helpers"""
    return AssertionHelpers()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "api: API contract tests")
    config.addinivalue_line("markers", "component: Component tests")
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "requires_db: Needs a running PostgreSQL")


def pytest_collection_modifyitems(config, items):
    """Skip tests whose infrastructure is unavailable"""
    skip_db = pytest.mark.skip(reason="PostgreSQL not available")

    for item in items:
        if "requires_db" in item.keywords and os.getenv("SKIP_DB_TESTS"):
            item.add_marker(skip_db)
