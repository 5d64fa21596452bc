"""
Resilience Engine
=================

Wires the components of one run together around a single gateway and a
single store:

    AIGateway ──┬── SelectorHealer (per page)
                ├── ObservationRecorder ── ReliabilityStore
                ├── ChangeDetectionSystem
                └── ExecutionOrchestrator ── ReliabilityStore (read)
"""

import logging
from typing import Any, Dict, List, Optional, Union

from .brain.ai_gateway import AIGateway, AIProvider
from .config import EngineConfig
from .core.page_state import PageProbe
from .core.selector_healer import HealingCache, SelectorHealer
from .impact.change_detection import ChangeDetectionSystem
from .knowledge.observation_recorder import ObservationRecorder
from .knowledge.reliability_store import ReliabilityStore
from .orchestration.execution_orchestrator import ExecutionOrchestrator

logger = logging.getLogger(__name__)


class ResilienceEngine:
    """
    Facade over the resilience components.

    Usage:
        engine = ResilienceEngine.from_env()
        healer = engine.create_healer(page)
        result = await healer.resolve("button.old-class")
        ...
        engine.shutdown()
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        gateway: Optional[AIGateway] = None,
        repo_dir: str = ".",
        scan_paths: Optional[List[str]] = None
    ):
        self.config = config or EngineConfig()
        self.gateway = gateway if gateway is not None else self._default_gateway(self.config)

        self.store = ReliabilityStore(str(self.config.model_path))
        self.recorder = ObservationRecorder(
            self.store,
            gateway=self.gateway,
            enable_semantic_learning=self.config.enable_semantic_learning,
            flush_after_each_observation=self.config.flush_after_each_observation
        )
        self.change_detector = ChangeDetectionSystem(
            gateway=self.gateway,
            cache_path=str(self.config.change_cache_path),
            repo_dir=repo_dir,
            scan_paths=scan_paths
        )
        self.orchestrator = ExecutionOrchestrator(gateway=self.gateway, store=self.store)

        # One healing cache per run, shared by every page's healer
        self.healing_cache = HealingCache()
        self._healers: List[SelectorHealer] = []

        logger.info(
            f"Resilience engine ready (model: {self.config.model_path}, "
            f"language model: {'on' if self.gateway else 'off'})"
        )

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **kwargs) -> "ResilienceEngine":
        return cls(config=EngineConfig.from_env(env_file), **kwargs)

    @staticmethod
    def _default_gateway(config: EngineConfig) -> Optional[AIGateway]:
        """A gateway only when it can actually authenticate"""
        if config.llm_provider == AIProvider.OLLAMA.value or config.llm_api_key:
            return AIGateway(config)
        logger.info("No language-model credentials configured, semantic steps disabled")
        return None

    # ==================== Healing ====================

    def create_healer(self, page: Union[PageProbe, Any]) -> SelectorHealer:
        """Healer for one page; accepts a PageProbe or a Playwright Page"""
        if isinstance(page, PageProbe):
            probe = page
        else:
            from .core.playwright_probe import PlaywrightPageProbe
            probe = PlaywrightPageProbe(page)

        healer = SelectorHealer(
            probe,
            recorder=self.recorder,
            store=self.store,
            gateway=self.gateway,
            config=self.config,
            cache=self.healing_cache
        )
        self._healers.append(healer)
        return healer

    # ==================== Results ====================

    def record_test_result(self, test_name: str, passed: bool) -> float:
        return self.recorder.record_test_result(test_name, passed)

    def get_insights(self) -> Dict[str, Any]:
        """Everything learned so far plus this run's healing and service usage"""
        healing = [h.get_healing_stats() for h in self._healers]
        return {
            "model": self.store.generate_insights(self.config.flaky_threshold),
            "recommended_patterns": self.store.get_recommended_patterns(),
            "session": self.recorder.get_session_stats(),
            "healing": {
                "healers": len(healing),
                "total_requests": sum(h["total_requests"] for h in healing),
                "healed": sum(h["healed"] for h in healing),
                "unresolved": sum(h["unresolved"] for h in healing),
                "cached_results": len(self.healing_cache),
            },
            "gateway": self.gateway.get_stats() if self.gateway else None,
        }

    def export_model(self) -> str:
        return self.store.export_model()

    def shutdown(self):
        """Persist the model; call once at the end of a run"""
        self.store.flush()
        logger.info("Resilience engine shut down, model saved")


_engine: Optional[ResilienceEngine] = None


def get_engine() -> ResilienceEngine:
    """Get the global engine instance"""
    global _engine
    if _engine is None:
        _engine = ResilienceEngine.from_env()
    return _engine


def set_engine(engine: Optional[ResilienceEngine]):
    """Replace the global engine (tests, embedding applications)"""
    global _engine
    _engine = engine
