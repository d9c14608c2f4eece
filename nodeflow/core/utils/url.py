# nodeflow/core/utils/url.py
"""URL helpers for safe logging and circuit key derivation."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Mask the password in a database URL for logging."""
    try:
        parsed = urlparse(url)
    except ValueError:
        if '@' not in url:
            return url
        pre, post = url.split('@', 1)
        return f"{pre.rsplit(':', 1)[0]}:***@{post}"
    if not parsed.password:
        return url
    netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
    return urlunparse(parsed._replace(netloc=netloc))


def url_host(url: str) -> str:
    """Return the lowercased host of a URL, or the raw string when it has none.

    ``https://hooks.example.com:8443/x`` -> ``hooks.example.com``
    """
    try:
        host = urlparse(url).hostname
    except ValueError:
        return url
    return host.lower() if host else url
