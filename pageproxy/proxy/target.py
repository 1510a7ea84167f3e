import logging
import re
from typing import Optional
from urllib.parse import unquote

import httpx

from pageproxy.proxy.errors import TargetResolutionError

logger = logging.getLogger("uvicorn.error")

DEFAULT_SCHEME = "https://"

# Characters that can never appear in a host name, raw or percent-encoded
FORBIDDEN_HOST_CHARS = re.compile(r"[\s%<>\\^|\"`{}]")

# An explicit scheme; such targets are never retried with DEFAULT_SCHEME
EXPLICIT_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def _parse_absolute(raw: str) -> Optional[httpx.URL]:
    """Parse ``raw`` as an absolute URL, returning None when it is not one."""
    try:
        url = httpx.URL(raw)
        host = url.host
    except (httpx.InvalidURL, UnicodeError):
        # host decoding raises UnicodeError for malformed IDNA labels
        return None
    if not url.scheme or not host:
        return None
    if FORBIDDEN_HOST_CHARS.search(host):
        return None
    return url


def resolve_target(encoded: str) -> httpx.URL:
    """
    Turn the encoded path segment after the proxy prefix into a target URL.

    The segment is decoded once and parsed as an absolute URL. Bare hosts
    such as ``example.com/path`` are retried with an ``https://`` scheme;
    values that already spell out ``scheme://`` are not.
    Any scheme is accepted as long as the URL has a host.

    Raises:
        TargetResolutionError: if neither attempt yields an absolute URL.
    """
    raw = unquote(encoded or "")
    candidate = raw.strip()

    url = _parse_absolute(candidate)
    if url is None and not EXPLICIT_SCHEME.match(candidate):
        url = _parse_absolute(DEFAULT_SCHEME + candidate)
    if url is None:
        logger.debug(f"[Target] Unresolvable target: {raw!r}")
        raise TargetResolutionError(raw)
    return url


def merge_query(target: httpx.URL, query: str) -> httpx.URL:
    """Append an inbound query string to the target's own query."""
    if not query:
        return target
    without_fragment = str(target).split("#", 1)[0].rstrip("?")
    separator = "&" if target.query else "?"
    return httpx.URL(f"{without_fragment}{separator}{query}")
