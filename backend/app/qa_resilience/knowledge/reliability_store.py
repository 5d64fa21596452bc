"""
Reliability Store

Durable, process-external model of what the harness has learned:
- Selector reliability scores (locator -> [0,1])
- Route signatures (route -> sample element texts)
- Element behaviours (locator -> behaviour tag)
- Common and anti patterns (locator fragments)
- Test stability scores (test name -> [0,1], exponential moving average)

Loading is fail-open: a missing, truncated or otherwise corrupt model
file yields an empty model instead of an exception, so a damaged file
never hard-fails a test run. Saving writes a temp file next to the model
and swaps it into place.

There is no cross-process locking. Two runs flushing the same file race
and the last writer wins.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class ApplicationModel:
    """In-memory form of the persisted model file"""
    route_signatures: Dict[str, List[str]] = field(default_factory=dict)
    element_behaviors: Dict[str, str] = field(default_factory=dict)
    common_patterns: List[str] = field(default_factory=list)
    anti_patterns: List[str] = field(default_factory=list)
    selector_reliability: Dict[str, float] = field(default_factory=dict)
    test_success_rates: Dict[str, float] = field(default_factory=dict)
    last_updated: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "routeSignatures": self.route_signatures,
            "elementBehaviors": self.element_behaviors,
            "commonPatterns": self.common_patterns,
            "antiPatterns": self.anti_patterns,
            "selectorReliability": self.selector_reliability,
            "testSuccessRates": self.test_success_rates,
            "lastUpdated": self.last_updated
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplicationModel":
        """Build a model from file data, dropping entries of the wrong shape"""
        def _scores(raw: Any) -> Dict[str, float]:
            scores = {}
            if isinstance(raw, dict):
                for key, value in raw.items():
                    if isinstance(value, (int, float)) and not isinstance(value, bool):
                        scores[str(key)] = _clamp(float(value))
            return scores

        def _strings(raw: Any) -> List[str]:
            if not isinstance(raw, list):
                return []
            seen: List[str] = []
            for item in raw:
                if isinstance(item, str) and item not in seen:
                    seen.append(item)
            return seen

        signatures = {}
        raw_signatures = data.get("routeSignatures")
        if isinstance(raw_signatures, dict):
            for route, texts in raw_signatures.items():
                signatures[str(route)] = _strings(texts)

        behaviors = {}
        raw_behaviors = data.get("elementBehaviors")
        if isinstance(raw_behaviors, dict):
            behaviors = {str(k): str(v) for k, v in raw_behaviors.items() if v is not None}

        last_updated = data.get("lastUpdated")
        return cls(
            route_signatures=signatures,
            element_behaviors=behaviors,
            common_patterns=_strings(data.get("commonPatterns")),
            anti_patterns=_strings(data.get("antiPatterns")),
            selector_reliability=_scores(data.get("selectorReliability")),
            test_success_rates=_scores(data.get("testSuccessRates")),
            last_updated=str(last_updated) if last_updated else datetime.now(timezone.utc).isoformat()
        )


class ReliabilityStore:
    """
    Single source of truth for selector reliability and test stability.

    Update rules:
    - Selector success: score + 0.1 (capped at 1)
    - Selector failure: score - 0.2 (floored at 0)
    - Test pass: rate + (1 - rate) * 0.2
    - Test fail: rate * 0.8
    Unknown keys start at 0.5.
    """

    INITIAL_SCORE = 0.5
    SELECTOR_SUCCESS_STEP = 0.1
    SELECTOR_FAILURE_STEP = 0.2
    STABILITY_SMOOTHING = 0.2
    DEFAULT_FLAKY_THRESHOLD = 0.7

    def __init__(self, model_path: str = "data/resilience/learned-model.json"):
        self.model_path = Path(model_path)
        self._lock = threading.Lock()
        self.model = self.load()

    # ==================== Persistence ====================

    def load(self) -> ApplicationModel:
        """Read the model from disk; any problem yields an empty model"""
        if not self.model_path.exists():
            return ApplicationModel()

        try:
            data = json.loads(self.model_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"[STORE] Could not read model {self.model_path}, starting empty: {e}")
            return ApplicationModel()

        if not isinstance(data, dict):
            logger.warning(f"[STORE] Model {self.model_path} is not a JSON object, starting empty")
            return ApplicationModel()

        model = ApplicationModel.from_dict(data)
        logger.info(
            f"[STORE] Loaded model from {model.last_updated} "
            f"({len(model.selector_reliability)} selectors, {len(model.test_success_rates)} tests)"
        )
        return model

    def save(self):
        """Write the model atomically (temp file + replace)"""
        with self._lock:
            self.model_path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(self.model.to_dict(), indent=2)

            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.model_path.name}.", suffix=".tmp", dir=str(self.model_path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.model_path)
            except OSError:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

    def flush(self):
        """Save, logging instead of raising - used at shutdown and after observations"""
        try:
            self.save()
        except OSError as e:
            logger.error(f"[STORE] Failed to save model to {self.model_path}: {e}")

    def _touch(self):
        self.model.last_updated = datetime.now(timezone.utc).isoformat()

    # ==================== Updates ====================

    def update_selector_reliability(self, locator: str, success: bool) -> float:
        current = self.model.selector_reliability.get(locator, self.INITIAL_SCORE)
        if success:
            updated = min(1.0, current + self.SELECTOR_SUCCESS_STEP)
        else:
            updated = max(0.0, current - self.SELECTOR_FAILURE_STEP)
        # Float steps drift (0.5 + 0.1 * 5); keep stored values tidy
        updated = _clamp(round(updated, 10))
        self.model.selector_reliability[locator] = updated
        self._touch()
        return updated

    def update_test_stability(self, test_name: str, passed: bool) -> float:
        current = self.model.test_success_rates.get(test_name, self.INITIAL_SCORE)
        if passed:
            updated = current + (1.0 - current) * self.STABILITY_SMOOTHING
        else:
            updated = current * (1.0 - self.STABILITY_SMOOTHING)
        updated = _clamp(updated)
        self.model.test_success_rates[test_name] = updated
        self._touch()
        return updated

    def record_pattern(self, fragment: str, is_anti: bool) -> bool:
        """Add a fragment to the common or anti list; False if already known"""
        if not fragment:
            return False
        target = self.model.anti_patterns if is_anti else self.model.common_patterns
        if fragment in target:
            return False
        target.append(fragment)
        self._touch()
        return True

    def set_element_behavior(self, locator: str, behavior: str):
        self.model.element_behaviors[locator] = behavior
        self._touch()

    def set_route_signature(self, route: str, texts: List[str]):
        self.model.route_signatures[route] = list(texts)
        self._touch()

    # ==================== Queries ====================

    def get_selector_reliability(self, locator: str) -> float:
        return self.model.selector_reliability.get(locator, self.INITIAL_SCORE)

    def get_test_stability(self, test_name: str) -> float:
        return self.model.test_success_rates.get(test_name, self.INITIAL_SCORE)

    def has_test_stability(self, test_name: str) -> bool:
        return test_name in self.model.test_success_rates

    def get_route_signature(self, route: str) -> Optional[List[str]]:
        return self.model.route_signatures.get(route)

    def is_anti_pattern(self, locator: str) -> bool:
        """Check if locator matches a known anti-pattern (substring either way)"""
        return any(
            pattern in locator or locator in pattern
            for pattern in self.model.anti_patterns
            if pattern and locator
        )

    def get_recommended_patterns(self) -> Dict[str, List[str]]:
        return {
            "use": list(self.model.common_patterns),
            "avoid": list(self.model.anti_patterns)
        }

    def get_flaky_tests(self, threshold: float = DEFAULT_FLAKY_THRESHOLD) -> List[str]:
        """Tests below threshold, least stable first"""
        flaky = [
            (name, rate) for name, rate in self.model.test_success_rates.items()
            if rate < threshold
        ]
        flaky.sort(key=lambda item: item[1])
        return [name for name, _ in flaky]

    def generate_insights(self, flaky_threshold: float = DEFAULT_FLAKY_THRESHOLD) -> Dict[str, Any]:
        """Summary of everything learned so far"""
        scores = list(self.model.selector_reliability.values())
        average = sum(scores) / len(scores) if scores else 0.0

        return {
            "routes_learned": len(self.model.route_signatures),
            "total_elements": len(self.model.element_behaviors),
            "tracked_selectors": len(self.model.selector_reliability),
            "tracked_tests": len(self.model.test_success_rates),
            "average_selector_reliability": round(average, 2),
            "top_patterns": self.model.common_patterns[:10],
            "top_anti_patterns": self.model.anti_patterns[:10],
            "flaky_tests": self.get_flaky_tests(flaky_threshold),
            "last_updated": self.model.last_updated
        }

    # ==================== Maintenance ====================

    def reset(self):
        """Clear the model and start fresh"""
        self.model = ApplicationModel()
        self.flush()
        logger.info("[STORE] Model reset")

    def export_model(self) -> str:
        """Export the model as a JSON string"""
        return json.dumps(self.model.to_dict(), indent=2)
