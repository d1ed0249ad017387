"""
Site-specific page adjustments applied before a rendered page is captured.
"""

from typing import List, Optional, Tuple

from playwright.async_api import Page

from ..utils.urls import get_domain


class Specialization:
    """Custom actions for pages of one website (closing modals, hiding overlays)."""

    domains: Tuple[str, ...] = ()

    def matches(self, url: str) -> bool:
        return get_domain(url) in self.domains

    async def apply(self, page: Page):
        raise NotImplementedError


class HideOverlaySpecialization(Specialization):
    """Hides elements that cover page content."""

    selectors: Tuple[str, ...] = ()

    async def apply(self, page: Page):
        await page.evaluate(
            """selectors => {
                for (const selector of selectors) {
                    const element = document.querySelector(selector);
                    if (element) {
                        element.style.display = 'none';
                    }
                }
            }""",
            list(self.selectors),
        )


class AbansSpecialization(HideOverlaySpecialization):
    domains = ('buyabans.com',)
    selectors = ('.mini-cart',)


SPECIALIZATIONS: List[Specialization] = [
    AbansSpecialization(),
]


def get_specialization(url: str) -> Optional[Specialization]:
    """Return the specialization registered for ``url``'s site, if any."""
    for specialization in SPECIALIZATIONS:
        if specialization.matches(url):
            return specialization
    return None
