#!/usr/bin/env python3
"""
Utility functions shared by the command line, the scraper and the daemon.
"""

import re
from typing import Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")

DANGEROUS_TAGS = [
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link",
]


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url.startswith(('http://', 'https://')):
        return False
    parsed = urlparse(url)
    if not parsed.hostname:
        return False
    return '.' in parsed.hostname or parsed.hostname == 'localhost'


def format_duration(seconds: float) -> str:
    """Format a duration for log lines, e.g. "850ms", "4.2s" or "1h 3m 5s"."""
    if seconds < 0:
        seconds = 0
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0:
        parts.append(f"{secs}s")
    return " ".join(parts)


def _rewrite_url(value: str, attr: str, base_url: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if attr == 'href' and value.startswith(('mailto:', '#')):
        return value
    if value.startswith(('http://', 'https://')):
        return value
    if base_url:
        try:
            resolved = urljoin(base_url, value)
        except ValueError:
            return None
        if resolved.startswith(('http://', 'https://')):
            return resolved
    return None


def clean_html(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize scraped HTML before it is stored as entry content.

    Args:
        html_content: Raw HTML extracted from a page
        base_url: Page URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images removed)
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup(DANGEROUS_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src') and str(tag[attr]).strip().lower().startswith('javascript:'):
                del tag[attr]

    for img in soup.find_all('img'):
        src = img.get('src', '')
        if re.search(r'(pixel|tracker|counter|spacer)', src, re.I) or \
           (re.search(r'\.(gif|png)$', src, re.I) and img.get('height') in ('0', '1')):
            img.decompose()

    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr):
                continue
            value = str(tag[attr]).strip()
            if not value:
                continue
            rewritten = _rewrite_url(value, attr, base_url)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    return str(soup).strip()
