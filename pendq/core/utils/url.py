# pendq/core/utils/url.py
"""URL helpers for safe logging and driver URL normalization."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Mask password in a database URL for secure logging.

    Falls back to plain string splitting if the URL cannot be parsed.
    """
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except ValueError:
        if '@' not in url:
            return url
        pre, post = url.split('@', 1)
        scheme_user = pre.rsplit(':', 1)[0]
        return f'{scheme_user}:***@{post}'


def to_psycopg_url(url: str) -> str:
    """Strip the SQLAlchemy driver suffix so psycopg can connect directly.

    ``postgresql+psycopg://u@h/db`` becomes ``postgresql://u@h/db``; anything
    else is returned unchanged.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return url.replace('+psycopg', '')
    if '+' not in parsed.scheme:
        return url
    base, driver = parsed.scheme.split('+', 1)
    if base in {'postgresql', 'postgres'} and driver == 'psycopg':
        return urlunparse(parsed._replace(scheme=base))
    return url
