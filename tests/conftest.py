"""
Pytest configuration and shared fixtures.

This file registers custom pytest markers and command-line options, and
provides temp-database stores and fake collaborators for unit tests.
"""

import pytest
from billbook.services.ai_orchestrator import ExtractionOrchestrator
from billbook.services.events.event_publisher import EventPublisher
from billbook.services.rate_limiter import CallBudget
from billbook.services.storage.sqlite_store import SQLiteBillStore


def pytest_addoption(parser):
    """Add custom command-line options"""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against real OCR engines, model providers and Azure resources"
    )


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring real external services"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is specified"""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


class FakeClock:
    """Manually advanced monotonic clock for the call budget"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite bill store in a temp directory"""
    return SQLiteBillStore(str(tmp_path / "billbook-test.db"))


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def heuristic_orchestrator():
    """Orchestrator with no hosted providers: every document uses pattern extraction"""
    return ExtractionOrchestrator(providers=[], budget=CallBudget(max_calls=5))


@pytest.fixture
def disabled_publisher():
    """Event publisher with no Service Bus sender (no-op)"""
    return EventPublisher(service_bus_sender=None)


@pytest.fixture
def bill_file(tmp_path):
    """Write a plain-text bill and return its path"""
    def _write(text: str, name: str = "bill.txt"):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path
    return _write
