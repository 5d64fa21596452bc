"""
Observation Recorder

Processes live interaction outcomes and feeds them into the
ReliabilityStore. During a run this is the store's only writer.

Learning Sources:
1. Route visits - per-element success/failure and visible text
2. Test results - pass/fail for stability tracking
3. Healing cascades - which locators broke and what replaced them
4. Language model (optional) - common/anti pattern fragments
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..errors import ServiceError
from .reliability_store import ReliabilityStore

logger = logging.getLogger(__name__)


@dataclass
class ElementObservation:
    """Outcome of one interaction with one element"""
    locator: str
    element_type: str
    visible_text: str = ""
    interaction_kind: str = "click"  # click, fill, select, hover, ...
    succeeded: bool = True
    behavior: str = ""  # navigates, opens_modal, submits_form, ...
    attributes: Dict[str, str] = field(default_factory=dict)
    observed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class RouteObservation:
    """One visit to one route"""
    route: str
    route_name: str
    elements: List[ElementObservation] = field(default_factory=list)
    observed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class RouteDrift:
    """How much of a route's learned signature is still on the page"""
    route: str
    expected: List[str]
    missing: List[str]
    match_ratio: float
    drifted: bool


class ObservationRecorder:
    """
    Updates the ReliabilityStore from what the run actually sees.

    Features:
    - Direct statistical updates for every observation
    - Route signatures for UI drift detection
    - Optional pattern mining through the language model (non-fatal)
    - Anti-pattern promotion for locators that keep breaking
    """

    # Distinct texts taken from one visit, and kept per route
    SIGNATURE_SAMPLE_SIZE = 5
    MAX_SIGNATURE_TEXTS = 10

    # A broken locator at or below this reliability becomes an anti-pattern.
    # From the initial 0.5 that is two cascade entries (0.5 -> 0.3 -> 0.1).
    ANTI_PATTERN_THRESHOLD = 0.1

    # Minimum reliability for get_reliable_selector
    RELIABLE_SELECTOR_THRESHOLD = 0.6

    DRIFT_THRESHOLD = 0.5

    def __init__(
        self,
        store: ReliabilityStore,
        gateway=None,
        enable_semantic_learning: bool = True,
        flush_after_each_observation: bool = True
    ):
        """
        Initialize the recorder.

        Args:
            store: ReliabilityStore to update
            gateway: Optional AIGateway for pattern mining
            enable_semantic_learning: Ask the gateway for patterns after each route
            flush_after_each_observation: Save the store after every route visit
        """
        self.store = store
        self.gateway = gateway
        self.enable_semantic_learning = enable_semantic_learning
        self.flush_after_each_observation = flush_after_each_observation

        # Ephemeral, per run
        self.observations: List[RouteObservation] = []
        self._semantic_failures = 0

    # ==================== Route Observations ====================

    async def observe_route(
        self,
        route: str,
        elements: List[ElementObservation],
        route_name: Optional[str] = None
    ) -> RouteObservation:
        """
        Learn from one route visit.

        Args:
            route: Route path (e.g. "/orders")
            elements: Observations collected on this visit
            route_name: Human-readable name, defaults to the route

        Returns:
            The recorded RouteObservation
        """
        observation = RouteObservation(
            route=route,
            route_name=route_name or route,
            elements=list(elements)
        )
        self.observations.append(observation)
        logger.info(f"[LEARN] Learning from {observation.route_name} ({route}), {len(elements)} elements")

        for element in observation.elements:
            self.store.update_selector_reliability(element.locator, element.succeeded)
            if element.behavior:
                self.store.set_element_behavior(element.locator, element.behavior)

        self._update_route_signature(route, observation.elements)

        if self.gateway is not None and self.enable_semantic_learning and observation.elements:
            await self._learn_patterns(observation)

        if self.flush_after_each_observation:
            self.store.flush()

        return observation

    def _update_route_signature(self, route: str, elements: List[ElementObservation]):
        sample: List[str] = []
        for element in elements:
            text = (element.visible_text or "").strip()
            if text and text not in sample:
                sample.append(text)
            if len(sample) >= self.SIGNATURE_SAMPLE_SIZE:
                break

        if not sample:
            return

        signature = list(self.store.get_route_signature(route) or [])
        for text in sample:
            if text not in signature:
                signature.append(text)
        self.store.set_route_signature(route, signature[:self.MAX_SIGNATURE_TEXTS])

    async def _learn_patterns(self, observation: RouteObservation):
        """Ask the language model for pattern fragments; failures are logged only"""
        try:
            insight = await self.gateway.generate_application_model(
                route=observation.route,
                route_name=observation.route_name,
                elements=[
                    {"type": e.element_type, "text": e.visible_text, "behavior": e.behavior}
                    for e in observation.elements
                ],
                patterns=[
                    {
                        "pattern": e.locator,
                        "frequency": 1,
                        "reliability": 1 if e.succeeded else 0
                    }
                    for e in observation.elements
                ]
            )
        except ServiceError as e:
            self._semantic_failures += 1
            logger.warning(f"[LEARN] Pattern extraction failed for {observation.route}, "
                           f"keeping statistical updates only: {e}")
            return

        for pattern in insight.model.common_patterns:
            self.store.record_pattern(pattern, is_anti=False)
        for pattern in insight.model.anti_patterns:
            self.store.record_pattern(pattern, is_anti=True)

    # ==================== Tests and Healing ====================

    def record_test_result(self, test_name: str, passed: bool) -> float:
        """Update a test's stability and persist it"""
        rate = self.store.update_test_stability(test_name, passed)
        self.store.flush()
        return rate

    def record_cascade_entry(self, broken_locator: str) -> bool:
        """
        Note that a locator really broke and entered the healing cascade.

        Returns True when this entry promoted the locator to an anti-pattern.
        """
        score = self.store.update_selector_reliability(broken_locator, False)
        if score <= self.ANTI_PATTERN_THRESHOLD and not self.store.is_anti_pattern(broken_locator):
            self.store.record_pattern(broken_locator, is_anti=True)
            logger.info(f"[LEARN] '{broken_locator}' keeps breaking, recorded as anti-pattern")
            return True
        return False

    def record_healing(self, broken_locator: str, healed_locator: str, method: str):
        """Credit the locator that replaced a broken one"""
        self.store.update_selector_reliability(healed_locator, True)
        logger.debug(f"[LEARN] Healed '{broken_locator}' -> '{healed_locator}' via {method}")

    # ==================== Queries ====================

    def get_reliable_selector(self, element_text: str, element_type: str) -> Optional[str]:
        """Best known locator for an element seen during this run"""
        needle = element_text.lower()
        candidates = []
        for observation in self.observations:
            for element in observation.elements:
                if element.element_type == element_type and needle in element.visible_text.lower():
                    candidates.append(
                        (self.store.get_selector_reliability(element.locator), element.locator)
                    )

        if not candidates:
            return None

        reliability, locator = max(candidates, key=lambda c: c[0])
        return locator if reliability > self.RELIABLE_SELECTOR_THRESHOLD else None

    def detect_route_drift(self, route: str, visible_texts: List[str]) -> Optional[RouteDrift]:
        """Compare a live page's texts with the route's learned signature"""
        expected = self.store.get_route_signature(route)
        if not expected:
            return None

        live = {t.strip().lower() for t in visible_texts if t and t.strip()}
        missing = [text for text in expected if text.strip().lower() not in live]
        ratio = (len(expected) - len(missing)) / len(expected)

        return RouteDrift(
            route=route,
            expected=list(expected),
            missing=missing,
            match_ratio=ratio,
            drifted=ratio < self.DRIFT_THRESHOLD
        )

    def get_session_stats(self) -> Dict[str, Any]:
        return {
            "routes_observed": len(self.observations),
            "elements_observed": sum(len(o.elements) for o in self.observations),
            "failed_interactions": sum(
                1 for o in self.observations for e in o.elements if not e.succeeded
            ),
            "semantic_failures": self._semantic_failures
        }
