"""
Pytest configuration and shared fixtures for resilience engine tests.
"""

import pytest
import sys
from pathlib import Path
from unittest.mock import Mock, AsyncMock
from typing import List

# Add backend app to path
sys.path.insert(0, str(Path(__file__).parent.parent / "app"))

from qa_resilience.config import EngineConfig
from qa_resilience.core.page_state import PageElement, PageSnapshot
from qa_resilience.knowledge.reliability_store import ReliabilityStore
from qa_resilience.knowledge.observation_recorder import ObservationRecorder


# ==================== Mock Page Fixture ====================

@pytest.fixture
def mock_page():
    """Create a mock Playwright page object."""
    page = AsyncMock()

    # Basic properties
    page.url = "https://example.com/orders"
    page.title = AsyncMock(return_value="Orders")

    # Evaluation
    page.evaluate = AsyncMock(return_value=[])

    # Locators
    mock_locator = AsyncMock()
    mock_locator.wait_for = AsyncMock()
    mock_locator.is_visible = AsyncMock(return_value=True)
    mock_locator.click = AsyncMock()
    mock_locator.fill = AsyncMock()

    locator_set = Mock()
    locator_set.first = mock_locator
    locator_set.last = mock_locator

    page.locator = Mock(return_value=locator_set)

    return page


# ==================== Config Fixture ====================

@pytest.fixture
def engine_config(tmp_path):
    """Engine config with throttling delays removed and data under tmp_path."""
    return EngineConfig(
        data_dir=str(tmp_path / "data" / "resilience"),
        llm_api_key="test-key",
        request_delay_seconds=0.0,
        initial_retry_delay_seconds=0.0,
        direct_retry_timeout_ms=50,
        fragment_timeout_ms=50,
        attribute_timeout_ms=50,
        position_timeout_ms=50,
        semantic_timeout_ms=50,
        semantic_alternative_timeout_ms=50
    )


# ==================== Store / Recorder Fixtures ====================

@pytest.fixture
def store(tmp_path):
    """ReliabilityStore backed by a temp file."""
    return ReliabilityStore(str(tmp_path / "learned-model.json"))


@pytest.fixture
def recorder(store):
    """ObservationRecorder without a language model."""
    return ObservationRecorder(store)


# ==================== Gateway Fixture ====================

@pytest.fixture
def mock_gateway():
    """Create a mock AIGateway; every specialized call must be configured per test."""
    gateway = Mock()
    gateway.heal_selector = AsyncMock()
    gateway.analyze_change_impact = AsyncMock()
    gateway.optimize_test_execution = AsyncMock()
    gateway.generate_application_model = AsyncMock()
    gateway.get_stats = Mock(return_value={"total_requests": 0})
    return gateway


# ==================== Page Snapshot Fixtures ====================

def make_snapshot(elements: List[PageElement], route: str = "/orders") -> PageSnapshot:
    return PageSnapshot(route=route, title="Test Page", elements=elements)


@pytest.fixture
def order_page_snapshot() -> PageSnapshot:
    """An order page: a submit button, a search input and a row of tabs."""
    return make_snapshot([
        PageElement(tag="button", text="Submit Order", classes=["btn", "btn-primary"], nth_child=3,
                    nth_of_type=1, is_last_of_type=True),
        PageElement(tag="input", name="search", type="text", id="order-search",
                    attributes={"placeholder": "Search orders"}, nth_child=1, nth_of_type=1),
        PageElement(tag="a", text="Open", classes=["tab"], nth_child=1, nth_of_type=1,
                    is_last_child=False, is_last_of_type=False),
        PageElement(tag="a", text="Picking", classes=["tab"], nth_child=2, nth_of_type=2,
                    is_last_child=False, is_last_of_type=False),
        PageElement(tag="a", text="Shipped", classes=["tab"], nth_child=3, nth_of_type=3),
        PageElement(tag="button", text="Hidden", visible=False),
    ])


# ==================== Temp Directory Fixture ====================

@pytest.fixture
def temp_data_dir(tmp_path):
    """Create a temporary data directory for tests."""
    data_dir = tmp_path / "data" / "resilience"
    data_dir.mkdir(parents=True)
    return data_dir
