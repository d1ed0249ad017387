"""
URL helpers shared by the admission filter, renderers and storage.
"""

import logging
import re
from typing import Iterable, List
from urllib.parse import urldefrag, urljoin, urlparse

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[^a-z0-9]', re.IGNORECASE)


def get_domain(url: str) -> str:
    """Return the lowercased host of ``url`` with a leading ``www.`` removed."""
    try:
        hostname = urlparse(url).hostname
    except ValueError as e:
        logger.error(f"Failed to parse domain from URL {url}: {e}")
        return "unknown"

    if not hostname:
        return "unknown"

    hostname = hostname.lower()
    return hostname[4:] if hostname.startswith('www.') else hostname


def strip_fragment(url: str) -> str:
    """Remove the ``#fragment`` part of a URL."""
    return urldefrag(url)[0]


def safe_file_name(url: str) -> str:
    """Flatten a URL into a name usable as a file or object key."""
    return _UNSAFE_CHARS.sub('_', url).lower()


def same_domain_links(page_url: str, hrefs: Iterable[str]) -> List[str]:
    """
    Resolve the anchors found on ``page_url`` and keep those on the same host.

    Links are made absolute, stripped of fragments and deduplicated while
    preserving first-seen order.
    """
    try:
        host = urlparse(page_url).hostname
    except ValueError:
        return []

    seen = set()
    links = []
    for href in hrefs:
        if not href:
            continue
        href = href.strip()
        if href.startswith(('javascript:', 'mailto:', 'tel:', 'data:')):
            continue

        absolute = strip_fragment(urljoin(page_url, href))
        if not absolute:
            continue

        try:
            parsed = urlparse(absolute)
        except ValueError:
            continue

        if parsed.scheme not in ('http', 'https') or parsed.hostname != host:
            continue

        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)

    return links
