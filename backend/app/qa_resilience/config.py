"""
Engine Configuration

Defaults live on the dataclass; from_env() overlays values from the
process environment (and a .env file when present).
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Configuration for the resilience engine"""
    data_dir: str = "data/resilience"
    model_filename: str = "learned-model.json"
    change_cache_filename: str = "change-cache.json"

    # Language-model service
    llm_provider: str = "openai"  # openai (compatible), anthropic, ollama
    llm_api_key: Optional[str] = None
    llm_api_url: Optional[str] = None
    llm_model: Optional[str] = None
    llm_timeout_seconds: float = 30.0
    llm_max_tokens: int = 2000
    llm_temperature: float = 0.7

    # Throttling - the service has strict concurrency limits
    max_concurrent_requests: int = 1
    request_delay_seconds: float = 3.0
    max_retries: int = 3
    initial_retry_delay_seconds: float = 2.0
    retry_backoff_multiplier: float = 2.0

    # Healing cascade
    direct_retry_timeout_ms: int = 2000
    fragment_timeout_ms: int = 1000
    attribute_timeout_ms: int = 500
    position_timeout_ms: int = 500
    semantic_timeout_ms: int = 2000
    semantic_alternative_timeout_ms: int = 1000
    semantic_max_elements: int = 20
    enable_semantic_healing: bool = True

    # Learning
    enable_semantic_learning: bool = True
    flush_after_each_observation: bool = True
    flaky_threshold: float = 0.7

    @property
    def model_path(self) -> Path:
        return Path(self.data_dir) / self.model_filename

    @property
    def change_cache_path(self) -> Path:
        return Path(self.data_dir) / self.change_cache_filename

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "EngineConfig":
        """Build a config from QA_RESILIENCE_* and provider variables"""
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        defaults = cls()
        provider = os.getenv("LLM_PROVIDER", defaults.llm_provider).lower()

        api_key = os.getenv("LLM_API_KEY")
        if not api_key:
            if provider == "anthropic":
                api_key = os.getenv("ANTHROPIC_API_KEY")
            elif provider == "openai":
                api_key = os.getenv("OPENAI_API_KEY")

        api_url = os.getenv("LLM_API_URL")
        if not api_url and provider == "ollama":
            api_url = os.getenv("OLLAMA_URL")

        return cls(
            data_dir=os.getenv("QA_RESILIENCE_DATA_DIR", defaults.data_dir),
            llm_provider=provider,
            llm_api_key=api_key,
            llm_api_url=api_url,
            llm_model=os.getenv("LLM_MODEL") or None,
            llm_timeout_seconds=_env_float("QA_RESILIENCE_LLM_TIMEOUT", defaults.llm_timeout_seconds),
            max_concurrent_requests=_env_int("QA_RESILIENCE_MAX_CONCURRENT", defaults.max_concurrent_requests),
            request_delay_seconds=_env_float("QA_RESILIENCE_REQUEST_DELAY", defaults.request_delay_seconds),
            max_retries=_env_int("QA_RESILIENCE_MAX_RETRIES", defaults.max_retries),
            initial_retry_delay_seconds=_env_float(
                "QA_RESILIENCE_RETRY_DELAY", defaults.initial_retry_delay_seconds
            ),
            semantic_max_elements=_env_int("QA_RESILIENCE_SEMANTIC_ELEMENTS", defaults.semantic_max_elements),
            enable_semantic_healing=_env_bool("QA_RESILIENCE_SEMANTIC_HEALING", defaults.enable_semantic_healing),
            enable_semantic_learning=_env_bool(
                "QA_RESILIENCE_SEMANTIC_LEARNING", defaults.enable_semantic_learning
            ),
            flaky_threshold=_env_float("QA_RESILIENCE_FLAKY_THRESHOLD", defaults.flaky_threshold),
        )
