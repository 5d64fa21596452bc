"""
Locator matcher

Answers "which snapshot elements does this locator select?" without a
browser. The snapshot is rendered into a BeautifulSoup document and CSS
is evaluated by soupsieve, so combinators, :not(), :is(), attribute
operators and the structural pseudo-classes behave as in a browser.

Only the Playwright extensions are translated by hand:

    text=foo  text="Foo"            text engine (substring / exact)
    :has-text("x")  :text("x")      case-insensitive substring
    :text-is("x")                   exact text
    :visible  :enabled              dropped, the snapshot holds visible elements
    css=...                         prefix dropped
    a >> b                          b searched inside (or on) each match of a
    trailing .first() / .last()

Each element is rendered under its recorded ancestors and padded with
filler siblings so :nth-child(), :nth-of-type() and :last-child see the
recorded position. Elements do not share parents, so sibling combinators
between two snapshot elements never match. Anything soupsieve rejects
matches nothing.
"""

import logging
import re
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

import soupsieve
from bs4 import BeautifulSoup, Tag

if TYPE_CHECKING:
    from .page_state import PageElement

logger = logging.getLogger(__name__)

CHAIN_SUFFIX_RE = re.compile(r"\.(?:first|last)\(\)\s*$")
TEXT_PSEUDO_RE = re.compile(
    r""":(has-text|text-is|text)\(\s*("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*'|[^)]*?)\s*\)"""
)
STATE_PSEUDO_RE = re.compile(r":(?:visible|enabled)(?![\w(-])")
TAG_NAME_RE = re.compile(r"^[a-zA-Z][\w-]*")

# Normalised element text, target of the translated text pseudo-classes
TEXT_ATTR = "data-qa-resilience-text"
FILLER_TAG = "qa-filler"
SLOT_TAG = "qa-slot"


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def _normalize(text: str) -> str:
    return " ".join(text.split())


def _css_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _split_top_level(selector: str, separators: str) -> List[str]:
    """Split on separator chars that sit outside quotes, brackets and parens"""
    parts = []
    current = []
    depth = 0
    quote = None

    for char in selector:
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in "\"'":
            quote = char
        elif char in "[(":
            depth += 1
        elif char in "])":
            depth = max(0, depth - 1)
        elif depth == 0 and char in separators:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)

    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def split_chain(locator: str) -> List[str]:
    """Split a Playwright chain on top-level '>>'; empty links are kept"""
    parts = []
    current = []
    depth = 0
    quote = None
    i = 0

    while i < len(locator):
        char = locator[i]
        if quote:
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif char in "[(":
            depth += 1
        elif char in "])":
            depth = max(0, depth - 1)
        elif depth == 0 and locator.startswith(">>", i):
            parts.append("".join(current).strip())
            current = []
            i += 2
            continue
        current.append(char)
        i += 1

    parts.append("".join(current).strip())
    return parts


def strip_chain_suffix(locator: str) -> str:
    """Drop a trailing .first()/.last() chain call"""
    return CHAIN_SUFFIX_RE.sub("", locator.strip())


def _translate_text_pseudo(match: "re.Match") -> str:
    kind = match.group(1)
    text = _normalize(_unquote(match.group(2)))
    if kind == "text-is":
        return f"[{TEXT_ATTR}={_css_string(text)}]"
    return f"[{TEXT_ATTR}*={_css_string(text)} i]"


def to_css(selector: str) -> str:
    """Rewrite the Playwright pseudo-classes of one chain link into plain CSS"""
    css = selector.strip()
    if css.startswith("css="):
        css = css[len("css="):]
    css = TEXT_PSEUDO_RE.sub(_translate_text_pseudo, css)
    css = STATE_PSEUDO_RE.sub("", css).strip()
    return css or "*"


def target_tag(locator: str) -> Optional[str]:
    """Tag name of the element a locator targets, if it names one"""
    last = split_chain(strip_chain_suffix(locator))[-1]
    if not last or last.startswith("text="):
        return None
    branches = _split_top_level(last, ",")
    if not branches:
        return None
    compounds = _split_top_level(branches[0], " >+~\t\n")
    if not compounds:
        return None
    m = TAG_NAME_RE.match(compounds[-1])
    return m.group(0).lower() if m else None


def _text_engine_matches(query: str, text: str) -> bool:
    query = query.strip()
    if not query:
        return False
    if len(query) >= 2 and query[0] == query[-1] and query[0] in "\"'":
        return _normalize(query[1:-1]) == text
    return _normalize(query).lower() in text.lower()


def html_attributes(element: "PageElement") -> Dict[str, object]:
    attrs: Dict[str, object] = {k: v for k, v in element.attributes.items() if k != "class"}
    for name in ("id", "role", "data-testid", "aria-label", "name", "type"):
        value = element.attribute(name)
        if value:
            attrs[name] = value
    if element.classes:
        attrs["class"] = list(element.classes)
    return attrs


class SnapshotDocument:
    """
    Snapshot elements rendered as one BeautifulSoup document.

    Rendered tags are mapped back to their PageElement; ancestors and
    filler siblings are structure only and are never returned by query().
    """

    def __init__(self, elements: Iterable["PageElement"]):
        self.soup = BeautifulSoup("", "html.parser")
        self._elements: Dict[int, "PageElement"] = {}

        html = self.soup.new_tag("html")
        body = self.soup.new_tag("body")
        html.append(body)
        self.soup.append(html)

        for element in elements:
            self._render(body, element)

    def _new_tag(self, element: "PageElement", text: str = "") -> Tag:
        attrs = html_attributes(element)
        if text:
            attrs[TEXT_ATTR] = text
        return self.soup.new_tag(element.tag or SLOT_TAG, attrs=attrs)

    def _render(self, body: Tag, element: "PageElement"):
        parent = body
        for ancestor in element.ancestors:
            # An ancestor's text contains its descendants' text
            node = self._new_tag(ancestor, element.text)
            parent.append(node)
            parent = node
        if not element.ancestors:
            slot = self.soup.new_tag(SLOT_TAG)
            parent.append(slot)
            parent = slot

        tag_name = element.tag or SLOT_TAG
        preceding = max(element.nth_child, element.nth_of_type, 1) - 1
        same_tag_before = max(element.nth_of_type, 1) - 1
        for i in range(preceding):
            parent.append(self.soup.new_tag(tag_name if i < same_tag_before else FILLER_TAG))

        tag = self._new_tag(element, element.text)
        if element.text:
            tag.string = element.text
        parent.append(tag)
        self._elements[id(tag)] = element

        if not element.is_last_of_type:
            parent.append(self.soup.new_tag(tag_name))
        elif not element.is_last_child:
            parent.append(self.soup.new_tag(FILLER_TAG))

    def query(self, locator: str) -> List["PageElement"]:
        """Snapshot elements selected by locator"""
        candidate = strip_chain_suffix(locator)
        if not candidate:
            return []

        scopes: List[Tag] = [self.soup]
        for link in split_chain(candidate):
            if not link:
                return []
            scopes = self._step(scopes, link)
            if not scopes:
                return []

        return [self._elements[id(tag)] for tag in scopes if id(tag) in self._elements]

    def _step(self, scopes: List[Tag], link: str) -> List[Tag]:
        """Tags matching one chain link inside, or on, any of scopes"""
        found: List[Tag] = []
        seen = set()

        def add(tag: Tag):
            if id(tag) not in seen:
                seen.add(id(tag))
                found.append(tag)

        if link.startswith("text="):
            query = link[len("text="):]
            for scope in scopes:
                for tag in [scope, *scope.find_all(True)]:
                    element = self._elements.get(id(tag))
                    if element is not None and _text_engine_matches(query, element.text):
                        add(tag)
            return found

        try:
            compiled = soupsieve.compile(to_css(link))
        except soupsieve.SelectorSyntaxError as e:
            logger.debug(f"[HEAL] '{link}' is not a selector the snapshot can evaluate: {e}")
            return []

        for scope in scopes:
            if scope is not self.soup and compiled.match(scope):
                add(scope)
            for tag in compiled.select(scope):
                add(tag)
        return found


def matches(locator: str, element: "PageElement") -> bool:
    """True if locator selects element"""
    return bool(SnapshotDocument([element]).query(locator))
