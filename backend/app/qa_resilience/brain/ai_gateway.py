"""
AI Gateway
==========

The single client for every language-model call the engine makes
(selector healing, change-impact ranking, plan optimisation, pattern
learning).

The service has strict concurrency limits, so the gateway:
- Allows one in-flight call at a time (per gateway instance)
- Enforces a minimum delay between successive calls
- Retries with exponential backoff, but only on transient errors
  (rate limits, connection resets, timeouts)
- Surfaces every other failure immediately so callers can fall back

All throttling state lives on the instance; two gateways never share
counters or locks.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel

from ..config import EngineConfig
from ..errors import (
    RateLimitError,
    ResponseParseError,
    ServiceConfigurationError,
    ServiceError,
    TransientServiceError,
)
from .response_parser import ParseFailure, parse_response
from .schemas import ApplicationModelInsight, HealSuggestion, ImpactRanking, OptimizedPlan

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "1302", "concurrent")


class AIProvider(Enum):
    """Supported AI providers"""
    OPENAI = "openai"        # any OpenAI-compatible chat completions endpoint
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"


DEFAULT_URLS = {
    AIProvider.OPENAI: "https://api.openai.com/v1/chat/completions",
    AIProvider.ANTHROPIC: "https://api.anthropic.com/v1/messages",
    AIProvider.OLLAMA: "http://localhost:11434",
}

DEFAULT_MODELS = {
    AIProvider.OPENAI: "gpt-4o-mini",
    AIProvider.ANTHROPIC: "claude-sonnet-4-20250514",
    AIProvider.OLLAMA: "llama3.2:3b",
}


@dataclass
class ChatMessage:
    """One role-tagged message"""
    role: str  # system, user, assistant
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


def _looks_rate_limited(body: str) -> bool:
    lowered = body.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


class AIGateway:
    """
    Rate-limited, retrying client for the language-model service.

    Responsibilities:
    - Throttle calls (concurrency cap + minimum spacing)
    - Retry transient failures with exponential backoff
    - Extract and validate structured replies
    - Track usage metrics
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the gateway.

        Args:
            config: Engine configuration (provider, keys, throttling)
            transport: Optional httpx transport, used by tests to stub the network
        """
        self.config = config or EngineConfig()
        try:
            self.provider = AIProvider(self.config.llm_provider)
        except ValueError:
            raise ServiceConfigurationError(f"Unknown provider: {self.config.llm_provider}")

        self.api_url = self.config.llm_api_url or DEFAULT_URLS[self.provider]
        self.model = self.config.llm_model or DEFAULT_MODELS[self.provider]
        self._transport = transport

        # Throttling
        self._semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_requests))
        self._last_request_at: Optional[float] = None
        self.active_requests = 0

        # Statistics
        self.total_requests = 0
        self.api_calls = 0
        self.retries = 0
        self.failures = 0
        self.parse_failures = 0

    # =========================================================================
    # THROTTLING AND RETRY
    # =========================================================================

    async def _sleep(self, seconds: float):
        await asyncio.sleep(seconds)

    async def _wait_for_request_slot(self):
        """Keep successive calls at least request_delay_seconds apart"""
        if self._last_request_at is not None:
            elapsed = time.monotonic() - self._last_request_at
            remaining = self.config.request_delay_seconds - elapsed
            if remaining > 0:
                await self._sleep(remaining)
        self._last_request_at = time.monotonic()

    async def _throttled_call(self, messages: List[ChatMessage]) -> str:
        async with self._semaphore:
            await self._wait_for_request_slot()
            self.active_requests += 1
            self.api_calls += 1
            try:
                return await self._call_provider(messages)
            finally:
                self.active_requests -= 1

    async def _retry_with_backoff(self, fn: Callable[[], Awaitable[str]], context: str) -> str:
        max_retries = max(1, self.config.max_retries)

        for attempt in range(1, max_retries + 1):
            try:
                return await fn()
            except TransientServiceError as e:
                if attempt >= max_retries:
                    self.failures += 1
                    logger.error(f"[AI-GATE] {context} failed after {attempt} attempts: {e}")
                    raise

                delay = self.config.initial_retry_delay_seconds * (
                    self.config.retry_backoff_multiplier ** (attempt - 1)
                )
                self.retries += 1
                logger.warning(
                    f"[AI-GATE] {context} hit a transient error, "
                    f"retry {attempt}/{max_retries} after {delay:.1f}s: {e}"
                )
                await self._sleep(delay)
            except ServiceError as e:
                self.failures += 1
                logger.error(f"[AI-GATE] {context} failed: {e}")
                raise

        # Loop always returns or raises
        raise ServiceError(f"{context} exhausted retries")

    # =========================================================================
    # PUBLIC ENTRY POINTS
    # =========================================================================

    async def chat(self, messages: List[ChatMessage], context: str = "LLM call") -> str:
        """
        Send a conversation and return the reply text.

        This is the main entry point for raw calls.
        """
        self.total_requests += 1
        return await self._retry_with_backoff(lambda: self._throttled_call(messages), context)

    async def request_structured(
        self,
        messages: List[ChatMessage],
        schema: Type[T],
        context: str = "LLM call"
    ) -> T:
        """
        Send a conversation and validate the reply against schema.

        Raises:
            ResponseParseError: no valid JSON matching schema in the reply
            ServiceError: the call itself failed
        """
        text = await self.chat(messages, context=context)
        result = parse_response(text, schema)
        if isinstance(result, ParseFailure):
            self.parse_failures += 1
            logger.warning(f"[AI-GATE] {context} returned unusable output: {result.error}")
            raise ResponseParseError(result.error, raw=result.raw)
        return result.value

    # =========================================================================
    # PROVIDERS
    # =========================================================================

    async def _call_provider(self, messages: List[ChatMessage]) -> str:
        if self.provider == AIProvider.OPENAI:
            return await self._call_openai(messages)
        elif self.provider == AIProvider.ANTHROPIC:
            return await self._call_anthropic(messages)
        return await self._call_ollama(messages)

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        """POST and classify every failure into the engine's error types"""
        try:
            async with httpx.AsyncClient(
                timeout=self.config.llm_timeout_seconds,
                transport=self._transport
            ) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientServiceError(f"Request timed out: {e}") from e
        except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise TransientServiceError(f"Connection error: {e}") from e
        except httpx.HTTPError as e:
            raise ServiceError(f"HTTP error: {e}") from e

        if response.status_code != 200:
            body = response.text[:500]
            if response.status_code == 429 or _looks_rate_limited(body):
                raise RateLimitError(
                    f"Rate limited: {response.status_code} - {body}",
                    status_code=response.status_code
                )
            raise ServiceError(
                f"API error: {response.status_code} - {body}",
                status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise ResponseParseError(f"Service returned a non-JSON envelope: {e}", raw=response.text)

    def _require_api_key(self) -> str:
        if not self.config.llm_api_key:
            raise ServiceConfigurationError(
                f"No API key configured for provider '{self.provider.value}'"
            )
        return self.config.llm_api_key

    async def _call_openai(self, messages: List[ChatMessage]) -> str:
        """Call an OpenAI-compatible chat completions endpoint"""
        api_key = self._require_api_key()
        data = await self._post(
            self.api_url,
            payload={
                "model": self.model,
                "messages": [m.to_dict() for m in messages],
                "temperature": self.config.llm_temperature,
                "max_tokens": self.config.llm_max_tokens
            },
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json"
            }
        )
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ServiceError("No response choices from service")

    async def _call_anthropic(self, messages: List[ChatMessage]) -> str:
        """Call the Anthropic messages API"""
        api_key = self._require_api_key()
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.config.llm_max_tokens,
            "messages": [m.to_dict() for m in messages if m.role != "system"]
        }
        if system:
            payload["system"] = system

        data = await self._post(
            self.api_url,
            payload=payload,
            headers={
                "x-api-key": api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json"
            }
        )
        try:
            return data["content"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise ServiceError("No content blocks in service response")

    async def _call_ollama(self, messages: List[ChatMessage]) -> str:
        """Call a local Ollama server"""
        data = await self._post(
            f"{self.api_url.rstrip('/')}/api/chat",
            payload={
                "model": self.model,
                "messages": [m.to_dict() for m in messages],
                "stream": False
            },
            headers={"Content-Type": "application/json"}
        )
        content = (data.get("message") or {}).get("content")
        if not content:
            raise ServiceError("Empty response from Ollama")
        return content

    # =========================================================================
    # SPECIALIZED REQUEST METHODS
    # =========================================================================

    async def heal_selector(
        self,
        broken_selector: str,
        context: str,
        available_elements: List[Dict[str, str]],
        current_page: str
    ) -> HealSuggestion:
        """Ask for a replacement for a broken selector"""
        system = ChatMessage("system", (
            "You are a selector healing expert. Find the best replacement for a broken selector.\n"
            'Return JSON: {"suggestedSelector":"css selector","confidence":0.9,'
            '"reasoning":"why","alternatives":["alt1","alt2"]}\n'
            "Strategies: data-testid, aria-label, text content, role+text, nearby elements."
        ))

        element_lines = "\n".join(
            f"{i}. {e.get('tag', '')} - text:\"{e.get('text', '')[:20]}\" id:{e.get('id', '')} "
            f"class:{e.get('className', '')[:20]} role:{e.get('role', '')} "
            f"data-testid:{e.get('dataTestId', '')} aria-label:{e.get('ariaLabel', '')}"
            for i, e in enumerate(available_elements)
        )
        user = ChatMessage("user", (
            f"Heal this broken selector:\n"
            f"Original: {broken_selector}\n"
            f"Context: {context}\n"
            f"Page: {current_page}\n\n"
            f"Available elements:\n{element_lines}\n\n"
            f"Suggest the best replacement selector."
        ))
        return await self.request_structured([system, user], HealSuggestion, context="selector healing")

    async def analyze_change_impact(
        self,
        changes: List[str],
        languages: List[str],
        features: List[str],
        available_tests: List[Dict[str, Any]]
    ) -> ImpactRanking:
        """Ask which tests a set of code changes puts at risk"""
        system = ChatMessage("system", (
            "Analyze code changes and determine which tests need to run.\n"
            'Return JSON: {"riskScore":85,"summary":"brief summary","impactedTests":'
            '[{"testName":"test name","impactLevel":"critical","affectedFeatures":["feat1"],"reason":"why"}]}\n'
            "Risk: critical (data loss, security), high (business logic), medium (validation), low (UI)."
        ))
        test_lines = "\n".join(
            f"- {t['name']} covers: {', '.join(t.get('coverage', []))}" for t in available_tests
        )
        user = ChatMessage("user", (
            f"Analyze these code changes:\n"
            f"Changes: {', '.join(changes)}\n"
            f"Languages: {', '.join(languages)}\n"
            f"Features: {', '.join(features)}\n\n"
            f"Available tests:\n{test_lines}\n\n"
            f"Prioritize affected tests."
        ))
        return await self.request_structured([system, user], ImpactRanking, context="change impact")

    async def optimize_test_execution(
        self,
        tests: List[Dict[str, Any]],
        available_time: Optional[float] = None,
        parallel_capacity: Optional[int] = None
    ) -> OptimizedPlan:
        """Ask for a dependency-respecting, budget-aware execution plan"""
        system = ChatMessage("system", (
            "Optimize test execution plan for fastest feedback.\n"
            'Return JSON: {"executionPlan":{"sequential":[{"test":"name","order":1}],'
            '"parallel":[{"tests":["test1","test2"],"order":1}],"skipped":["test3"]},'
            '"estimatedDuration":300,"coverage":95,"reasoning":"why"}\n'
            "Tests whose dependencies must run first go to sequential in dependency order. "
            "Group mutually independent tests into parallel shards no larger than the parallel capacity. "
            "Skip tests that do not fit the time limit. Prioritize critical and unstable tests."
        ))
        test_lines = "\n".join(
            f"- {t['name']} ({t['duration']}s, priority:{t['priority']}, stability:{t['stability']:.2f}, "
            f"deps:{','.join(t.get('dependencies') or []) or 'none'})"
            for t in tests
        )
        user = ChatMessage("user", (
            f"Optimize test execution:\n"
            f"Tests: {len(tests)}\n"
            f"{f'Time limit: {available_time}s' if available_time else 'No time limit'}\n"
            f"{f'Parallel capacity: {parallel_capacity}' if parallel_capacity else 'Full parallelism'}\n\n"
            f"Tests:\n{test_lines}\n\n"
            f"Create optimal execution plan."
        ))
        return await self.request_structured([system, user], OptimizedPlan, context="plan optimization")

    async def generate_application_model(
        self,
        route: str,
        route_name: str,
        elements: List[Dict[str, Any]],
        patterns: List[Dict[str, Any]]
    ) -> ApplicationModelInsight:
        """Ask for common/anti locator patterns from one route's observations"""
        system = ChatMessage("system", (
            "Build application-specific testing model from observations.\n"
            'Return JSON: {"model":{"commonPatterns":[],"antiPatterns":[]},"recommendations":["rec1"]}\n'
            "commonPatterns are selector fragments that work reliably, antiPatterns are fragments to avoid."
        ))
        element_desc = ", ".join(
            f"{e.get('type', '')}:{str(e.get('text', ''))[:20]} -> {e.get('behavior', '')}" for e in elements
        )
        pattern_desc = ", ".join(
            f"{p['pattern']} (freq:{p['frequency']}, rel:{p['reliability']})" for p in patterns
        )
        user = ChatMessage("user", (
            f"Build model for {route_name} ({route}):\n"
            f"Elements: {element_desc}\n"
            f"Patterns: {pattern_desc}\n\n"
            f"Extract learning for future tests."
        ))
        return await self.request_structured(
            [system, user], ApplicationModelInsight, context="application model"
        )

    # =========================================================================
    # MANAGEMENT
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get gateway statistics"""
        return {
            "provider": self.provider.value,
            "model": self.model,
            "total_requests": self.total_requests,
            "api_calls": self.api_calls,
            "retries": self.retries,
            "failures": self.failures,
            "parse_failures": self.parse_failures,
            "active_requests": self.active_requests
        }
