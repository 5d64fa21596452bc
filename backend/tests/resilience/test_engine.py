"""
Unit tests for ResilienceEngine wiring.
"""

import json
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "app"))

from qa_resilience.brain.ai_gateway import AIGateway
from qa_resilience.core.page_state import SnapshotProbe
from qa_resilience.core.playwright_probe import PlaywrightPageProbe
from qa_resilience.engine import ResilienceEngine, get_engine, set_engine


@pytest.fixture
def offline_config(engine_config):
    engine_config.llm_api_key = None
    return engine_config


class TestConstruction:
    """Test component wiring."""

    def test_no_credentials_no_gateway(self, offline_config):
        """Test that semantic steps are off without credentials."""
        engine = ResilienceEngine(offline_config)

        assert engine.gateway is None
        assert engine.recorder.gateway is None
        assert engine.orchestrator.store is engine.store

    def test_gateway_shared(self, engine_config):
        """Test one gateway for every component."""
        engine = ResilienceEngine(engine_config)

        assert isinstance(engine.gateway, AIGateway)
        assert engine.recorder.gateway is engine.gateway
        assert engine.change_detector.gateway is engine.gateway
        assert engine.orchestrator.gateway is engine.gateway

    def test_local_provider_needs_no_key(self, offline_config):
        """Test ollama gets a gateway without a key."""
        offline_config.llm_provider = "ollama"

        assert ResilienceEngine(offline_config).gateway is not None

    def test_paths_under_data_dir(self, offline_config):
        """Test store and change cache locations."""
        engine = ResilienceEngine(offline_config)

        assert engine.store.model_path == Path(offline_config.data_dir) / "learned-model.json"
        assert engine.change_detector.cache_path == Path(offline_config.data_dir) / "change-cache.json"

    def test_from_env(self, tmp_path, monkeypatch):
        """Test configuration from the environment."""
        monkeypatch.setenv("QA_RESILIENCE_DATA_DIR", str(tmp_path / "env-data"))
        monkeypatch.setenv("LLM_PROVIDER", "openai")
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        engine = ResilienceEngine.from_env(env_file=str(tmp_path / "missing.env"))

        assert engine.config.data_dir == str(tmp_path / "env-data")
        assert engine.gateway is None


class TestHealers:
    """Test healer creation."""

    def test_probe_used_as_is(self, offline_config, order_page_snapshot):
        """Test a PageProbe is not wrapped."""
        engine = ResilienceEngine(offline_config)
        probe = SnapshotProbe(order_page_snapshot)

        healer = engine.create_healer(probe)

        assert healer.probe is probe
        assert healer.cache is engine.healing_cache
        assert healer.recorder is engine.recorder

    def test_playwright_page_wrapped(self, offline_config, mock_page):
        """Test a Playwright page gets a PlaywrightPageProbe."""
        engine = ResilienceEngine(offline_config)

        healer = engine.create_healer(mock_page)

        assert isinstance(healer.probe, PlaywrightPageProbe)

    @pytest.mark.asyncio
    async def test_insights_aggregate_healers(self, offline_config, order_page_snapshot):
        """Test healing totals across pages and shared cache hits."""
        engine = ResilienceEngine(offline_config)
        first = engine.create_healer(SnapshotProbe(order_page_snapshot))
        second = engine.create_healer(SnapshotProbe(order_page_snapshot))

        await first.resolve("button.old-class")
        cached = await second.resolve("button.old-class")
        engine.record_test_result("checkout", False)

        insights = engine.get_insights()

        assert cached.from_cache
        assert insights["healing"] == {
            "healers": 2,
            "total_requests": 2,
            "healed": 1,
            "unresolved": 0,
            "cached_results": 1,
        }
        assert insights["model"]["flaky_tests"] == ["checkout"]
        assert insights["gateway"] is None


class TestLifecycle:
    """Test persistence and the global instance."""

    def test_shutdown_persists(self, offline_config):
        """Test the model survives an engine restart."""
        engine = ResilienceEngine(offline_config)
        engine.store.update_selector_reliability("#save", True)
        engine.shutdown()

        restarted = ResilienceEngine(offline_config)

        assert restarted.store.get_selector_reliability("#save") == pytest.approx(0.6)
        assert json.loads(restarted.export_model())["selectorReliability"]["#save"] == pytest.approx(0.6)

    def test_set_engine(self, offline_config):
        """Test replacing the global engine."""
        engine = ResilienceEngine(offline_config)
        set_engine(engine)
        try:
            assert get_engine() is engine
        finally:
            set_engine(None)
