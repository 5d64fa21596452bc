"""
Unit tests for SelectorHealer.

Tests each step of the healing cascade against a fixed page snapshot.
"""

import asyncio
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "app"))

from qa_resilience.brain.schemas import HealSuggestion
from qa_resilience.core.page_state import PageElement, PageProbe, PageSnapshot, SnapshotProbe
from qa_resilience.core.selector_healer import HealingCache, HealingMethod, SelectorHealer
from qa_resilience.errors import TransientServiceError


class HangingProbe(PageProbe):
    """Probe whose visibility checks never return"""

    def __init__(self):
        self.calls = 0

    async def snapshot(self) -> PageSnapshot:
        return PageSnapshot(route="/slow")

    async def is_visible(self, locator: str, timeout_ms: int) -> bool:
        self.calls += 1
        await asyncio.sleep(30)
        return True


@pytest.fixture
def probe(order_page_snapshot):
    return SnapshotProbe(order_page_snapshot)


@pytest.fixture
def healer(probe, recorder, engine_config):
    return SelectorHealer(probe, recorder=recorder, config=engine_config)


@pytest.fixture
def rows_snapshot():
    """Table rows identified only by role and position."""
    return PageSnapshot(route="/orders", elements=[
        PageElement(tag="tr", role="row", text=f"Order {i}", nth_child=i, nth_of_type=i,
                    is_last_child=(i == 3), is_last_of_type=(i == 3))
        for i in (1, 2, 3)
    ])


class TestDirectRetry:
    """Test step 1."""

    @pytest.mark.asyncio
    async def test_working_locator_resolves_directly(self, healer, store):
        """Test a locator that only needed a wait."""
        result = await healer.resolve("#order-search")

        assert result.resolved
        assert result.method == HealingMethod.DIRECT_RETRY
        assert result.confidence == 1.0
        assert result.attempted == ["direct_retry"]
        assert store.get_selector_reliability("#order-search") == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_full_css_resolves_directly(self, healer):
        """Test negation and chained locators valid in the browser need no healing."""
        negated = await healer.resolve("button:not(.disabled)")
        chained = await healer.resolve("button >> text=Submit")

        assert negated.method == HealingMethod.DIRECT_RETRY
        assert negated.locator == "button:not(.disabled)"
        assert chained.method == HealingMethod.DIRECT_RETRY

    @pytest.mark.asyncio
    async def test_direct_retry_not_cached(self, healer):
        """Test that timing recoveries are not remembered."""
        await healer.resolve("#order-search")

        assert len(healer.cache) == 0


class TestFragments:
    """Test step 2."""

    @pytest.mark.asyncio
    async def test_id_fragment(self, healer):
        """Test an id buried in a stale compound."""
        result = await healer.resolve("form #order-search.stale")

        assert result.resolved
        assert result.locator == "#order-search"
        assert result.method == HealingMethod.FRAGMENT_ID
        assert result.confidence == pytest.approx(0.9)
        assert result.attempted == ["direct_retry", "fragment"]

    @pytest.mark.asyncio
    async def test_text_fragment(self, healer):
        """Test a text hint rebuilt as a text locator."""
        result = await healer.resolve('div.cta:has-text("Submit Order")')

        assert result.locator == "text=Submit Order"
        assert result.method == HealingMethod.FRAGMENT_TEXT
        assert result.confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_id_attribute_fragment(self, healer):
        """Test an id given as an attribute selector."""
        result = await healer.resolve('input.gone[id="order-search"]')

        assert result.locator == "#order-search"


class TestAttributeMatching:
    """Test step 3."""

    @pytest.mark.asyncio
    async def test_renamed_class(self, mock_gateway, probe, recorder, engine_config):
        """Test a button whose class was renamed heals without the language model."""
        healer = SelectorHealer(probe, recorder=recorder, gateway=mock_gateway, config=engine_config)

        result = await healer.resolve("button.old-class")

        assert result.resolved
        assert result.locator == 'button:has-text("Submit Order")'
        assert result.method == HealingMethod.ATTRIBUTE_MATCHING
        assert result.confidence == pytest.approx(0.7)
        assert result.attempted == ["direct_retry", "fragment", "attribute"]
        assert result.alternatives == ["button"]
        mock_gateway.heal_selector.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inputs_rebuilt_from_name_and_type(self, healer, probe):
        """Test input confidence and name/type rebuild."""
        result = await healer.resolve("input.legacy-search")

        assert result.locator == 'input[name="search"][type="text"]'
        assert result.confidence == pytest.approx(0.75)
        assert ".legacy-search" in probe.probed

    @pytest.mark.asyncio
    async def test_anti_patterns_tried_last(self, healer, store):
        """Test known anti-pattern candidates lose their place."""
        store.record_pattern(':has-text("Submit Order")', is_anti=True)

        result = await healer.resolve("button.old-class")

        assert result.locator == "button"
        assert result.alternatives == ['button:has-text("Submit Order")']


class TestPosition:
    """Test step 4."""

    @pytest.mark.asyncio
    async def test_neighbouring_ordinal(self, rows_snapshot, recorder, engine_config):
        """Test nth-child(5) on a three-row table walks to row 3."""
        probe = SnapshotProbe(rows_snapshot)
        healer = SelectorHealer(probe, recorder=recorder, config=engine_config)

        result = await healer.resolve("[role=row]:nth-child(5)")

        assert result.locator == "[role=row]:nth-child(3)"
        assert result.method == HealingMethod.POSITION_ADJUSTMENT
        assert result.confidence == pytest.approx(0.6)
        assert result.attempted == ["direct_retry", "position"]
        assert probe.probed[1:3] == ["[role=row]:nth-child(4)", "[role=row]:nth-child(6)"]

    @pytest.mark.asyncio
    async def test_flipped_chain_modifier(self, recorder, engine_config):
        """Test .first() falls back to .last()."""
        snapshot = PageSnapshot(elements=[PageElement(tag="tr", role="row", is_last_child=True)])

        class LastOnlyProbe(SnapshotProbe):
            async def is_visible(self, locator, timeout_ms):
                self.probed.append(locator)
                return locator.endswith(".last()")

        healer = SelectorHealer(LastOnlyProbe(snapshot), recorder=recorder, config=engine_config)

        result = await healer.resolve("[role=row].first()")

        assert result.locator == "[role=row].last()"
        assert result.method == HealingMethod.POSITION_MODIFIER
        assert result.confidence == pytest.approx(0.65)


class TestSemantic:
    """Test step 5."""

    @pytest.mark.asyncio
    async def test_alternative_confidence_discounted(self, probe, recorder, mock_gateway, engine_config):
        """Test an alternative that resolves when the primary does not."""
        mock_gateway.heal_selector.return_value = HealSuggestion(
            suggested_selector="#missing",
            confidence=0.8,
            reasoning="search box",
            alternatives=["#order-search"]
        )
        healer = SelectorHealer(probe, recorder=recorder, gateway=mock_gateway, config=engine_config)

        result = await healer.resolve("#gone", context="search orders")

        assert result.locator == "#order-search"
        assert result.method == HealingMethod.SEMANTIC
        assert result.confidence == pytest.approx(0.72)
        assert result.reasoning == "search box"
        assert result.attempted == ["direct_retry", "semantic"]

        kwargs = mock_gateway.heal_selector.await_args.kwargs
        assert kwargs["context"] == "search orders"
        assert kwargs["current_page"] == "/orders"
        assert len(kwargs["available_elements"]) == 5

    @pytest.mark.asyncio
    async def test_element_list_limited(self, probe, mock_gateway, engine_config):
        """Test that only the configured number of elements is sent."""
        engine_config.semantic_max_elements = 2
        mock_gateway.heal_selector.return_value = HealSuggestion(suggested_selector="#order-search")
        healer = SelectorHealer(probe, gateway=mock_gateway, config=engine_config)

        await healer.resolve("#gone")

        assert len(mock_gateway.heal_selector.await_args.kwargs["available_elements"]) == 2

    @pytest.mark.asyncio
    async def test_service_failure_leaves_unresolved(self, probe, recorder, mock_gateway, engine_config):
        """Test that a failing service produces an unresolved result, not an exception."""
        mock_gateway.heal_selector.side_effect = TransientServiceError("rate limited")
        healer = SelectorHealer(probe, recorder=recorder, gateway=mock_gateway, config=engine_config)

        result = await healer.resolve("#gone")

        assert not result.resolved
        assert result.method == HealingMethod.UNRESOLVED
        finding = result.to_finding("search orders")
        assert finding["type"] == "selector_unresolved"
        assert finding["test"] == "search orders"
        assert finding["attempted_strategies"] == ["direct_retry", "semantic"]

    @pytest.mark.asyncio
    async def test_semantic_disabled(self, probe, mock_gateway, engine_config):
        """Test the switch for the semantic step."""
        engine_config.enable_semantic_healing = False
        healer = SelectorHealer(probe, gateway=mock_gateway, config=engine_config)

        result = await healer.resolve("#gone")

        assert not result.resolved
        mock_gateway.heal_selector.assert_not_awaited()


class TestCacheAndStats:
    """Test caching, bookkeeping and bounded probes."""

    @pytest.mark.asyncio
    async def test_cache_hit(self, healer, probe):
        """Test a second resolve skips probing."""
        first = await healer.resolve("button.old-class")
        probes_after_first = len(probe.probed)

        second = await healer.resolve("button.old-class")

        assert second.from_cache
        assert second.locator == first.locator
        assert len(probe.probed) == probes_after_first
        assert healer.get_healing_stats()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_unresolved_cached(self, healer):
        """Test that hopeless locators are not retried within a session."""
        await healer.resolve("#gone")
        again = await healer.resolve("#gone")

        assert again.from_cache
        assert not again.resolved

    @pytest.mark.asyncio
    async def test_shared_cache(self, probe, engine_config):
        """Test two healers sharing a cache."""
        cache = HealingCache()
        await SelectorHealer(probe, config=engine_config, cache=cache).resolve("button.old-class")

        result = await SelectorHealer(probe, config=engine_config, cache=cache).resolve("button.old-class")

        assert result.from_cache
        assert "button.old-class" in cache

    @pytest.mark.asyncio
    async def test_cascade_entry_recorded(self, healer, store):
        """Test broken and healed locators both update reliability."""
        await healer.resolve("button.old-class")

        assert store.get_selector_reliability("button.old-class") == pytest.approx(0.3)
        assert store.get_selector_reliability('button:has-text("Submit Order")') == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_stats(self, healer):
        """Test counters after one heal and one failure."""
        await healer.resolve("button.old-class")
        await healer.resolve("#gone")

        stats = healer.get_healing_stats()

        assert stats["total_requests"] == 2
        assert stats["healed"] == 1
        assert stats["unresolved"] == 1
        assert stats["heal_rate"] == pytest.approx(0.5)
        assert stats["method_hits"]["attribute_matching"] == 1

    @pytest.mark.asyncio
    async def test_clear_cache(self, healer):
        """Test cache reset."""
        await healer.resolve("#gone")
        healer.clear_cache()

        assert len(healer.cache) == 0

    @pytest.mark.asyncio
    async def test_hanging_probe_is_bounded(self, engine_config):
        """Test that a probe that never answers counts as not visible."""
        probe = HangingProbe()
        healer = SelectorHealer(probe, config=engine_config)

        result = await asyncio.wait_for(healer.resolve("#gone"), timeout=5)

        assert not result.resolved
        assert probe.calls == 1
