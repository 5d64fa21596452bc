"""
Page State

What the healing cascade knows about the live page: a snapshot of the
visible interactive elements, and a probe that answers "does this locator
currently resolve to a visible element?".

PlaywrightPageProbe (playwright_probe.py) answers against a real page.
SnapshotProbe answers against a captured snapshot, which makes the
cascade deterministic for replays and tests.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .locator_matcher import SnapshotDocument

logger = logging.getLogger(__name__)

INTERACTIVE_TAGS = ("button", "input", "select", "textarea", "a")


@dataclass
class PageElement:
    """One interactive element as seen on the page"""
    tag: str
    text: str = ""
    id: str = ""
    classes: List[str] = field(default_factory=list)
    role: str = ""
    test_id: str = ""
    aria_label: str = ""
    name: str = ""
    type: str = ""
    attributes: Dict[str, str] = field(default_factory=dict)
    visible: bool = True

    # Position among siblings (1-based)
    nth_child: int = 1
    nth_of_type: int = 1
    is_last_child: bool = True
    is_last_of_type: bool = True

    # Enclosing elements, outermost first
    ancestors: List["PageElement"] = field(default_factory=list)

    def __post_init__(self):
        self.tag = (self.tag or "").lower()
        self.text = " ".join((self.text or "").split())

    def attribute(self, attr: str) -> Optional[str]:
        """Attribute value as a CSS attribute selector would see it"""
        attr = attr.lower()
        known = {
            "id": self.id,
            "class": " ".join(self.classes),
            "role": self.role,
            "data-testid": self.test_id,
            "aria-label": self.aria_label,
            "name": self.name,
            "type": self.type,
        }
        value = known.get(attr)
        if value:
            return value
        return self.attributes.get(attr)

    def to_prompt_dict(self) -> Dict[str, str]:
        """Compact description sent to the language model"""
        return {
            "tag": self.tag,
            "text": self.text[:50],
            "id": self.id,
            "className": " ".join(self.classes),
            "role": self.role,
            "dataTestId": self.test_id,
            "ariaLabel": self.aria_label,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PageElement":
        """Build from the payload of the in-page snapshot script"""
        class_name = data.get("className") or ""
        if isinstance(class_name, str):
            classes = class_name.split()
        else:
            classes = [str(c) for c in class_name]

        return cls(
            tag=str(data.get("tag") or ""),
            text=str(data.get("text") or ""),
            id=str(data.get("id") or ""),
            classes=classes,
            role=str(data.get("role") or ""),
            test_id=str(data.get("dataTestId") or ""),
            aria_label=str(data.get("ariaLabel") or ""),
            name=str(data.get("name") or ""),
            type=str(data.get("type") or ""),
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
            visible=bool(data.get("visible", True)),
            nth_child=int(data.get("nthChild") or 1),
            nth_of_type=int(data.get("nthOfType") or 1),
            is_last_child=bool(data.get("isLastChild", True)),
            is_last_of_type=bool(data.get("isLastOfType", True)),
            ancestors=[cls.from_dict(a) for a in data.get("ancestors") or [] if isinstance(a, dict)],
        )


@dataclass
class PageSnapshot:
    """Visible interactive elements of one page at one moment"""
    route: str = ""
    title: str = ""
    elements: List[PageElement] = field(default_factory=list)

    def visible_elements(self) -> List[PageElement]:
        return [e for e in self.elements if e.visible]

    def visible_texts(self) -> List[str]:
        return [e.text for e in self.visible_elements() if e.text]

    def elements_by_tag(self, tag: str) -> List[PageElement]:
        tag = tag.lower()
        return [e for e in self.visible_elements() if e.tag == tag]


class PageProbe(ABC):
    """The two questions the healing cascade asks the browser"""

    @abstractmethod
    async def snapshot(self) -> PageSnapshot:
        """Capture the currently visible interactive elements"""

    @abstractmethod
    async def is_visible(self, locator: str, timeout_ms: int) -> bool:
        """True if locator resolves to a visible element within timeout_ms"""


class SnapshotProbe(PageProbe):
    """
    Probe that evaluates locators against a fixed snapshot.

    Keeps the list of probed locators so callers can inspect which
    candidates the cascade tried.
    """

    def __init__(self, snapshot: PageSnapshot):
        self._snapshot = snapshot
        self._document: Optional[SnapshotDocument] = None
        self.probed: List[str] = []

    async def snapshot(self) -> PageSnapshot:
        return self._snapshot

    async def is_visible(self, locator: str, timeout_ms: int) -> bool:
        self.probed.append(locator)
        if self._document is None:
            self._document = SnapshotDocument(self._snapshot.visible_elements())
        return bool(self._document.query(locator))

    def update(self, snapshot: PageSnapshot):
        """Swap in a new page state (after navigation)"""
        self._snapshot = snapshot
        self._document = None
