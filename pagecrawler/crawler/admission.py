"""
Admission filter: decides whether a URL is worth rendering at all.
"""

import logging
import re
from typing import Iterable, Optional
from urllib.parse import urlsplit

from ..utils.urls import get_domain

logger = logging.getLogger(__name__)

NON_HTML_EXTENSION = re.compile(
    r'\.(jpg|jpeg|png|gif|bmp|svg|webp|avif|mp4|mp3|avi|mov|wmv|flv|mkv|'
    r'pdf|docx?|xlsx?|pptx?|zip|rar|7z)$',
    re.IGNORECASE,
)

FUNCTIONAL_PATTERNS = [
    re.compile(r'/auth/?$', re.IGNORECASE),
    re.compile(r'/login/?$', re.IGNORECASE),
    re.compile(r'/signup/?$', re.IGNORECASE),
    re.compile(r'/register/?$', re.IGNORECASE),
    re.compile(r'/cart/?$', re.IGNORECASE),
    re.compile(r'/checkout/?$', re.IGNORECASE),
    re.compile(r'/user/profile/?$', re.IGNORECASE),
    re.compile(r'/wishlist/\d+/addAj(?:/|$)'),
    re.compile(r'(?:[?&]|^)add-to-cart=(\d+)(?:&|$)'),
    re.compile(r'/brochure/download/(?:[^?#\s]*)'),
    re.compile(r'(?:[?&]|^)share=([^&]+)(?:&|$)', re.IGNORECASE),
    re.compile(r'(?=.*[?&]action=yith-woocompare-add-product(?:&|$))(?=.*[?&]id=(?P<id>\d+)(?:&|$)).*', re.IGNORECASE),
    re.compile(r'(?:[?&]|^)add_to_wishlist=(\d+)(?:&|$)', re.IGNORECASE),
    re.compile(r'/product-tag/[^/?#]+/?', re.IGNORECASE),
]


class AdmissionFilter:
    """
    Rejects URLs that should never reach a renderer.

    A URL is rejected when it has query markers, points at a non-HTML file,
    lives outside the allowed domains or hits a functional page such as a
    login form or shopping cart.
    """

    def __init__(self, allowed_domains: Iterable[str]):
        self.allowed_domains = {get_domain(f"https://{domain.strip()}/") for domain in allowed_domains}

    def rejection_reason(self, url: str) -> Optional[str]:
        """Return why ``url`` is rejected, or None if it is admissible."""
        if '?' in url or '&' in url:
            return 'query parameters'

        try:
            path = urlsplit(url).path
        except ValueError:
            return 'unparseable url'

        if NON_HTML_EXTENSION.search(path):
            return 'file extension'

        if get_domain(url) not in self.allowed_domains:
            return 'domain not allowed'

        if any(pattern.search(url) for pattern in FUNCTIONAL_PATTERNS):
            return 'functional path'

        return None

    def is_admissible(self, url: str) -> bool:
        reason = self.rejection_reason(url)
        if reason:
            logger.debug(f"URL {url} is blacklisted: {reason}")
            return False
        return True
