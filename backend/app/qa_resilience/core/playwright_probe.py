"""
Playwright-backed PageProbe.
"""

import logging
from typing import Any, List

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .locator_matcher import strip_chain_suffix
from .page_state import INTERACTIVE_TAGS, PageElement, PageProbe, PageSnapshot

logger = logging.getLogger(__name__)

# Collects visible interactive elements with the attributes the cascade uses
SNAPSHOT_SCRIPT = '''
    (selector) => {
        const isVisible = (el) => {
            const style = getComputedStyle(el);
            const rect = el.getBoundingClientRect();
            return style.display !== 'none' && style.visibility !== 'hidden' &&
                   rect.width > 0 && rect.height > 0;
        };
        const describe = (node) => ({
            tag: node.tagName.toLowerCase(),
            id: node.id || '',
            className: typeof node.className === 'string' ? node.className : '',
            role: node.getAttribute('role') || '',
            dataTestId: node.getAttribute('data-testid') || ''
        });
        const results = [];
        for (const el of document.querySelectorAll(selector)) {
            const parent = el.parentElement;
            const siblings = parent ? Array.from(parent.children) : [el];
            const sameType = siblings.filter(s => s.tagName === el.tagName);
            const ancestors = [];
            for (let node = parent; node && node !== document.body && ancestors.length < 8; node = node.parentElement) {
                ancestors.unshift(describe(node));
            }
            const attributes = {};
            for (const attr of el.attributes) {
                attributes[attr.name] = attr.value;
            }
            results.push({
                tag: el.tagName.toLowerCase(),
                text: (el.innerText || el.value || '').trim().slice(0, 100),
                id: el.id || '',
                className: typeof el.className === 'string' ? el.className : '',
                role: el.getAttribute('role') || '',
                dataTestId: el.getAttribute('data-testid') || '',
                ariaLabel: el.getAttribute('aria-label') || '',
                name: el.getAttribute('name') || '',
                type: el.getAttribute('type') || '',
                attributes: attributes,
                visible: isVisible(el),
                nthChild: siblings.indexOf(el) + 1,
                nthOfType: sameType.indexOf(el) + 1,
                isLastChild: siblings[siblings.length - 1] === el,
                isLastOfType: sameType[sameType.length - 1] === el,
                ancestors: ancestors
            });
        }
        return results;
    }
'''

SNAPSHOT_SELECTOR = ", ".join(INTERACTIVE_TAGS + ('[role="button"]', '[role="link"]', '[data-testid]'))


class PlaywrightPageProbe(PageProbe):
    """Answers visibility questions against a live Playwright page"""

    def __init__(self, page: Page):
        self.page = page

    async def snapshot(self) -> PageSnapshot:
        try:
            raw: List[Any] = await self.page.evaluate(SNAPSHOT_SCRIPT, SNAPSHOT_SELECTOR)
            title = await self.page.title()
        except PlaywrightError as e:
            logger.warning(f"[HEAL] Page snapshot failed: {e}")
            return PageSnapshot(route=self.page.url)

        elements = [PageElement.from_dict(item) for item in raw or [] if isinstance(item, dict)]
        return PageSnapshot(route=self.page.url, title=title, elements=elements)

    async def is_visible(self, locator: str, timeout_ms: int) -> bool:
        selector = strip_chain_suffix(locator)
        try:
            matched = self.page.locator(selector)
            target = matched.last if locator.rstrip().endswith(".last()") else matched.first
            await target.wait_for(state="visible", timeout=timeout_ms)
            return True
        except PlaywrightError:
            # Timeouts and invalid selectors both mean "not resolvable"
            return False
