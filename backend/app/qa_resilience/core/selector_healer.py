"""
Selector Healer

Recovers a locator that no longer resolves by walking a cost-ordered
cascade, stopping at the first candidate the page reports as visible.

Step Order:
1. Direct retry - the original locator after a visibility wait (timing, not a break)
2. Fragment-derived - id / aria-label / text / class hints, rebuilt standalone
3. Attribute re-matching - same-tag elements rebuilt from stable attributes
4. Positional adjustment - neighbouring ordinals and first/last modifiers
5. Semantic fallback - language model suggestion, verified on the page

Every probe is bounded by its step's timeout. An exhausted cascade returns
an unresolved HealingResult; resolve() never raises for a locator that
cannot be healed.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from difflib import SequenceMatcher
from enum import Enum
from typing import Any, Dict, List, Optional

from ..config import EngineConfig
from ..errors import ServiceError
from .locator_matcher import strip_chain_suffix, target_tag
from .page_state import PageElement, PageProbe, PageSnapshot

logger = logging.getLogger(__name__)

TEXT_HINT_RE = re.compile(r"""(?:text=|:has-text\(|:text\(|:text-is\()\s*(['"])(.+?)\1""")
ID_HINT_RE = re.compile(r"#([a-zA-Z_][\w-]*)")
ID_ATTR_RE = re.compile(r"""\[id\s*=\s*(['"]?)([^'"\]]+)\1\]""")
ARIA_HINT_RE = re.compile(r"""aria-label\s*=\s*(['"])(.+?)\1""")
CLASS_HINT_RE = re.compile(r"\.([a-zA-Z_-][\w-]*)")
QUOTED_RE = re.compile(r"""(['"]).*?\1""")
ORDINAL_RE = re.compile(r":(nth-child|nth-of-type)\((\d+)\)")
EDGE_PSEUDO_RE = re.compile(r":(first|last)-(child|of-type)")
CHAIN_MODIFIER_RE = re.compile(r"\.(first|last)\(\)\s*$")

INPUT_TAGS = ("input", "textarea", "select")

# Grace on top of a step timeout so the probe can report its own timeout first
PROBE_GRACE_SECONDS = 0.25


class HealingMethod(Enum):
    """Which step produced the locator"""
    DIRECT_RETRY = "direct_retry"
    FRAGMENT_ID = "fragment_id"
    FRAGMENT_ARIA_LABEL = "fragment_aria_label"
    FRAGMENT_TEXT = "fragment_text"
    FRAGMENT_CLASS = "fragment_class"
    ATTRIBUTE_MATCHING = "attribute_matching"
    POSITION_ADJUSTMENT = "position_adjustment"
    POSITION_MODIFIER = "position_modifier"
    SEMANTIC = "semantic"
    UNRESOLVED = "unresolved"


@dataclass
class HealingResult:
    """Outcome of one resolve() call"""
    original: str
    resolved: bool
    locator: Optional[str] = None
    confidence: float = 0.0
    method: HealingMethod = HealingMethod.UNRESOLVED
    alternatives: List[str] = field(default_factory=list)
    attempted: List[str] = field(default_factory=list)
    reasoning: str = ""
    from_cache: bool = False

    def to_finding(self, test_name: Optional[str] = None) -> Dict[str, Any]:
        """Structured finding for reports: which test, which locator, what was tried"""
        return {
            "type": "selector_healed" if self.resolved else "selector_unresolved",
            "severity": "info" if self.resolved else "error",
            "test": test_name,
            "locator": self.original,
            "healed_locator": self.locator,
            "method": self.method.value,
            "confidence": round(self.confidence, 2),
            "attempted_strategies": list(self.attempted),
            "alternatives": list(self.alternatives),
            "reasoning": self.reasoning,
        }


@dataclass
class _Candidate:
    locator: str
    confidence: float
    method: HealingMethod


class HealingCache:
    """
    In-session results keyed by the broken locator.

    Lives only as long as the healer; nothing here is persisted.
    """

    def __init__(self):
        self._results: Dict[str, HealingResult] = {}

    def get(self, locator: str) -> Optional[HealingResult]:
        return self._results.get(locator)

    def put(self, result: HealingResult):
        self._results[result.original] = result

    def clear(self):
        self._results.clear()

    def __contains__(self, locator: str) -> bool:
        return locator in self._results

    def __len__(self) -> int:
        return len(self._results)


def _similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a.lower(), b.lower()).ratio()


def _locator_words(locator: str) -> str:
    """Human-ish words hidden in a locator: 'button.submit-btn' -> 'button submit btn'"""
    return " ".join(re.findall(r"[a-zA-Z]+", locator))


def _css_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class SelectorHealer:
    """
    Five-step healing cascade for broken locators.

    Bookkeeping:
    - Real cascade entries (direct retry failed) are reported to the recorder,
      which may promote the broken locator to an anti-pattern
    - The winning locator is reported to the recorder as a success
    - Candidates matching a known anti-pattern are tried last within a step
    """

    def __init__(
        self,
        probe: PageProbe,
        recorder=None,
        store=None,
        gateway=None,
        config: Optional[EngineConfig] = None,
        cache: Optional[HealingCache] = None
    ):
        """
        Initialize the healer.

        Args:
            probe: PageProbe for the page being driven
            recorder: ObservationRecorder for reliability bookkeeping
            store: ReliabilityStore for anti-pattern lookups (defaults to recorder.store)
            gateway: AIGateway for the semantic step (step skipped when None)
            config: Engine configuration (step timeouts, element limits)
            cache: Shared HealingCache, a fresh one per healer by default
        """
        self.probe = probe
        self.recorder = recorder
        self.store = store if store is not None else getattr(recorder, "store", None)
        self.gateway = gateway
        self.config = config or EngineConfig()
        self.cache = cache if cache is not None else HealingCache()

        # Stats tracking
        self._total_requests = 0
        self._cache_hits = 0
        self._method_hits: Dict[HealingMethod, int] = {method: 0 for method in HealingMethod}
        self._semantic_calls = 0

    # ==================== Main Entry Point ====================

    async def resolve(
        self,
        broken_locator: str,
        snapshot: Optional[PageSnapshot] = None,
        context: str = ""
    ) -> HealingResult:
        """
        Find a working replacement for broken_locator.

        Args:
            broken_locator: The locator that failed
            snapshot: Page state to heal against (captured from the probe if omitted)
            context: What the caller was trying to do, passed to the semantic step

        Returns:
            HealingResult; resolved=False when every step failed
        """
        self._total_requests += 1

        cached = self.cache.get(broken_locator)
        if cached is not None:
            self._cache_hits += 1
            logger.debug(f"[HEAL] Cache hit for '{broken_locator}'")
            return replace(cached, from_cache=True)

        attempted: List[str] = ["direct_retry"]
        if await self._probe(broken_locator, self.config.direct_retry_timeout_ms):
            # Transient timing, not a break; nothing to cache
            self._method_hits[HealingMethod.DIRECT_RETRY] += 1
            self._record_success(broken_locator, broken_locator, HealingMethod.DIRECT_RETRY)
            return HealingResult(
                original=broken_locator,
                resolved=True,
                locator=broken_locator,
                confidence=1.0,
                method=HealingMethod.DIRECT_RETRY,
                attempted=attempted
            )

        logger.info(f"[HEAL] '{broken_locator}' did not resolve, entering cascade")
        if self.recorder is not None:
            self.recorder.record_cascade_entry(broken_locator)

        if snapshot is None:
            snapshot = await self.probe.snapshot()

        steps = [
            ("fragment", lambda: self._fragment_candidates(broken_locator), self.config.fragment_timeout_ms),
            ("attribute", lambda: self._attribute_candidates(broken_locator, snapshot),
             self.config.attribute_timeout_ms),
            ("position", lambda: self._position_candidates(broken_locator), self.config.position_timeout_ms),
        ]

        for step_name, build, timeout_ms in steps:
            candidates = [c for c in build() if c.locator != broken_locator]
            if not candidates:
                continue
            attempted.append(step_name)
            winner = await self._first_visible(candidates, timeout_ms)
            if winner:
                return self._finish(broken_locator, winner, candidates, attempted)

        if self.gateway is not None and self.config.enable_semantic_healing:
            attempted.append("semantic")
            result = await self._try_semantic(broken_locator, snapshot, context, attempted)
            if result:
                return result

        self._method_hits[HealingMethod.UNRESOLVED] += 1
        logger.warning(f"[HEAL] Could not heal '{broken_locator}' (tried: {', '.join(attempted)})")
        result = HealingResult(original=broken_locator, resolved=False, attempted=attempted)
        self.cache.put(result)
        return result

    def _finish(
        self,
        broken_locator: str,
        winner: _Candidate,
        candidates: List[_Candidate],
        attempted: List[str],
        reasoning: str = ""
    ) -> HealingResult:
        self._method_hits[winner.method] += 1
        self._record_success(broken_locator, winner.locator, winner.method)
        logger.info(
            f"[HEAL] Healed '{broken_locator}' -> '{winner.locator}' "
            f"via {winner.method.value} ({winner.confidence:.2f})"
        )
        result = HealingResult(
            original=broken_locator,
            resolved=True,
            locator=winner.locator,
            confidence=winner.confidence,
            method=winner.method,
            alternatives=[c.locator for c in candidates if c.locator != winner.locator],
            attempted=attempted,
            reasoning=reasoning
        )
        self.cache.put(result)
        return result

    def _record_success(self, broken_locator: str, locator: str, method: HealingMethod):
        if self.recorder is not None:
            self.recorder.record_healing(broken_locator, locator, method.value)

    # ==================== Probing ====================

    async def _probe(self, locator: str, timeout_ms: int) -> bool:
        try:
            return await asyncio.wait_for(
                self.probe.is_visible(locator, timeout_ms),
                timeout=timeout_ms / 1000 + PROBE_GRACE_SECONDS
            )
        except asyncio.TimeoutError:
            logger.debug(f"[HEAL] Probe for '{locator}' exceeded {timeout_ms}ms")
            return False

    def _prioritize(self, candidates: List[_Candidate]) -> List[_Candidate]:
        """Known anti-patterns go last, order otherwise kept"""
        if self.store is None:
            return candidates
        return sorted(candidates, key=lambda c: self.store.is_anti_pattern(c.locator))

    async def _first_visible(self, candidates: List[_Candidate], timeout_ms: int) -> Optional[_Candidate]:
        for candidate in self._prioritize(candidates):
            if await self._probe(candidate.locator, timeout_ms):
                return candidate
        return None

    # ==================== Step 2: Fragments ====================

    def _fragment_candidates(self, locator: str) -> List[_Candidate]:
        candidates: List[_Candidate] = []
        base = strip_chain_suffix(locator)

        unquoted = QUOTED_RE.sub("", base)

        id_match = ID_HINT_RE.search(unquoted)
        id_attr = ID_ATTR_RE.search(base)
        if id_match or id_attr:
            element_id = id_match.group(1) if id_match else id_attr.group(2)
            candidates.append(_Candidate(f"#{element_id}", 0.9, HealingMethod.FRAGMENT_ID))

        aria_match = ARIA_HINT_RE.search(base)
        if aria_match:
            label = _css_string(aria_match.group(2))
            candidates.append(_Candidate(f'[aria-label="{label}"]', 0.85, HealingMethod.FRAGMENT_ARIA_LABEL))

        text_match = TEXT_HINT_RE.search(base)
        if text_match:
            candidates.append(_Candidate(f"text={text_match.group(2)}", 0.8, HealingMethod.FRAGMENT_TEXT))

        # Class tokens outside quoted strings and attribute values
        class_match = CLASS_HINT_RE.search(re.sub(r"\[[^\]]*\]", "", unquoted))
        if class_match:
            candidates.append(_Candidate(f".{class_match.group(1)}", 0.7, HealingMethod.FRAGMENT_CLASS))

        return candidates

    # ==================== Step 3: Attributes ====================

    def _attribute_candidates(self, locator: str, snapshot: PageSnapshot) -> List[_Candidate]:
        tag = target_tag(locator)
        if tag is None:
            lowered = locator.lower()
            if "button" in lowered:
                tag = "button"
            elif "input" in lowered:
                tag = "input"
            else:
                return []

        elements = snapshot.elements_by_tag(tag)
        if not elements:
            return []

        # Elements that look most like the broken locator first
        hint = _locator_words(locator)
        elements.sort(key=lambda e: -max(
            _similarity(hint, e.text),
            _similarity(hint, e.id),
            _similarity(hint, " ".join(e.classes))
        ))

        confidence = 0.75 if tag in INPUT_TAGS else 0.7
        seen: List[str] = []
        for element in elements:
            for built in self._rebuild_from_attributes(tag, element):
                if built not in seen:
                    seen.append(built)
        if tag not in seen:
            seen.append(tag)

        return [_Candidate(built, confidence, HealingMethod.ATTRIBUTE_MATCHING) for built in seen]

    @staticmethod
    def _rebuild_from_attributes(tag: str, element: PageElement) -> List[str]:
        built = []
        if element.test_id:
            built.append(f'{tag}[data-testid="{_css_string(element.test_id)}"]')
        if element.name:
            name_part = f'[name="{_css_string(element.name)}"]'
            type_part = f'[type="{_css_string(element.type)}"]' if element.type else ""
            built.append(f"{tag}{name_part}{type_part}")
        elif element.type and tag == "input":
            built.append(f'{tag}[type="{_css_string(element.type)}"]')
        if element.text:
            built.append(f'{tag}:has-text("{_css_string(element.text[:50])}")')
        return built

    # ==================== Step 4: Position ====================

    def _position_candidates(self, locator: str) -> List[_Candidate]:
        candidates: List[_Candidate] = []

        ordinal = ORDINAL_RE.search(locator)
        if ordinal:
            kind, index = ordinal.group(1), int(ordinal.group(2))
            for offset in (-1, 1, -2, 2):
                new_index = index + offset
                if new_index > 0:
                    adjusted = locator[:ordinal.start()] + f":{kind}({new_index})" + locator[ordinal.end():]
                    candidates.append(_Candidate(adjusted, 0.6, HealingMethod.POSITION_ADJUSTMENT))

            suffix = "child" if kind == "nth-child" else "of-type"
            for edge in ("first", "last"):
                adjusted = locator[:ordinal.start()] + f":{edge}-{suffix}" + locator[ordinal.end():]
                candidates.append(_Candidate(adjusted, 0.65, HealingMethod.POSITION_MODIFIER))

        edge_pseudo = EDGE_PSEUDO_RE.search(locator)
        if edge_pseudo:
            flipped = "last" if edge_pseudo.group(1) == "first" else "first"
            adjusted = (
                locator[:edge_pseudo.start()] + f":{flipped}-{edge_pseudo.group(2)}" + locator[edge_pseudo.end():]
            )
            candidates.append(_Candidate(adjusted, 0.65, HealingMethod.POSITION_MODIFIER))

        chain = CHAIN_MODIFIER_RE.search(locator)
        if chain:
            flipped = "last" if chain.group(1) == "first" else "first"
            candidates.append(_Candidate(
                locator[:chain.start()] + f".{flipped}()", 0.65, HealingMethod.POSITION_MODIFIER
            ))

        return candidates

    # ==================== Step 5: Semantic ====================

    async def _try_semantic(
        self,
        broken_locator: str,
        snapshot: PageSnapshot,
        context: str,
        attempted: List[str]
    ) -> Optional[HealingResult]:
        elements = snapshot.visible_elements()[:self.config.semantic_max_elements]
        self._semantic_calls += 1
        try:
            suggestion = await self.gateway.heal_selector(
                broken_selector=broken_locator,
                context=context,
                available_elements=[e.to_prompt_dict() for e in elements],
                current_page=snapshot.route
            )
        except ServiceError as e:
            logger.warning(f"[HEAL] Semantic step failed for '{broken_locator}': {e}")
            return None

        primary: List[_Candidate] = []
        if suggestion.suggested_selector:
            primary.append(_Candidate(suggestion.suggested_selector, suggestion.confidence, HealingMethod.SEMANTIC))
        alternatives = [
            _Candidate(alt, suggestion.confidence * 0.9, HealingMethod.SEMANTIC)
            for alt in suggestion.alternatives
            if alt and alt != suggestion.suggested_selector
        ]

        for candidate in self._prioritize(primary + alternatives):
            timeout_ms = (
                self.config.semantic_timeout_ms if candidate in primary
                else self.config.semantic_alternative_timeout_ms
            )
            if candidate.locator == broken_locator:
                continue
            if await self._probe(candidate.locator, timeout_ms):
                return self._finish(
                    broken_locator, candidate, primary + alternatives, attempted, suggestion.reasoning
                )

        logger.info(f"[HEAL] No semantic suggestion for '{broken_locator}' resolved on the page")
        return None

    # ==================== Management ====================

    def clear_cache(self):
        self.cache.clear()

    def get_healing_stats(self) -> Dict[str, Any]:
        """Get healing statistics"""
        healed = sum(
            count for method, count in self._method_hits.items()
            if method not in (HealingMethod.UNRESOLVED, HealingMethod.DIRECT_RETRY)
        )
        cascades = healed + self._method_hits[HealingMethod.UNRESOLVED]
        return {
            "total_requests": self._total_requests,
            "cache_hits": self._cache_hits,
            "cached_results": len(self.cache),
            "healed": healed,
            "unresolved": self._method_hits[HealingMethod.UNRESOLVED],
            "heal_rate": (healed / cascades) if cascades else 0.0,
            "semantic_calls": self._semantic_calls,
            "method_hits": {method.value: count for method, count in self._method_hits.items()},
        }
