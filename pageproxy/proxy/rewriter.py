"""
HTML and inline CSS rewriting.

Every URL the browser would fetch or navigate to is resolved against the page
and replaced by its proxy-wrapped form, ``<prefix>/<percent-encoded URL>``.
Rewriting is best-effort: a reference that cannot be resolved keeps its
original text.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, Iterator, Optional, Tuple
from urllib.parse import quote

import httpx
from bs4 import BeautifulSoup

logger = logging.getLogger("uvicorn.error")

# Element name -> attributes that hold a single URL
REWRITABLE_ATTRIBUTES: Dict[str, Tuple[str, ...]] = {
    "a": ("href",),
    "area": ("href",),
    "link": ("href",),
    "script": ("src",),
    "img": ("src",),
    "video": ("src", "poster"),
    "audio": ("src",),
    "source": ("src",),
    "track": ("src",),
    "iframe": ("src",),
    "embed": ("src",),
    "input": ("src",),
    "form": ("action",),
}

# Element name -> attributes that hold a comma separated candidate list
SRCSET_ATTRIBUTES: Dict[str, Tuple[str, ...]] = {
    "img": ("srcset",),
    "source": ("srcset",),
}

CSS_URL_PATTERN = re.compile(r"""url\((['"]?)([^'")]+)\1\)""")
META_REFRESH_URL_PATTERN = re.compile(r"(url\s*=\s*)(['\"]?)([^'\"]+)\2", re.I)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


@dataclass(frozen=True)
class RewriteContext:
    """Resolution base and proxy prefix for one rewritten document."""

    base_url: httpx.URL
    proxy_prefix: str = "/proxy"

    def wrap(self, absolute_url: str) -> str:
        return proxy_path(absolute_url, self.proxy_prefix)


def proxy_path(absolute_url: str, proxy_prefix: str = "/proxy") -> str:
    """Return the proxy-relative path that fetches ``absolute_url``."""
    return f"{proxy_prefix.rstrip('/')}/{quote(absolute_url, safe='')}"


def is_html(content_type: Optional[str]) -> bool:
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    return media_type in HTML_CONTENT_TYPES


def resolve_reference(value: str, base_url: httpx.URL) -> Optional[httpx.URL]:
    """
    Resolve ``value`` against ``base_url``.

    Returns None for references that have nothing to fetch through the proxy:
    empty or fragment-only values, malformed references, and URLs without a
    network host such as ``javascript:``, ``data:`` or ``mailto:``.
    """
    reference = value.strip()
    if not reference or reference.startswith("#"):
        return None
    try:
        resolved = base_url.join(reference)
        host = resolved.host
    except (httpx.InvalidURL, UnicodeError):
        return None
    if not resolved.scheme or not host:
        return None
    return resolved


def rewrite_reference(value: str, context: RewriteContext) -> str:
    """Return the proxy-wrapped form of ``value``, or ``value`` unchanged."""
    resolved = resolve_reference(value, context.base_url)
    if resolved is None:
        return value
    return context.wrap(str(resolved))


def _srcset_candidates(value: str) -> Iterator[Tuple[str, str]]:
    """
    Split a srcset into ``(url, descriptor)`` pairs.

    A candidate URL runs up to the next whitespace, so commas inside it are
    kept; trailing commas end the candidate. Descriptors run up to the next
    comma.
    """
    position, length = 0, len(value)
    while position < length:
        while position < length and (
            value[position].isspace() or value[position] == ","
        ):
            position += 1
        if position == length:
            break
        end = position
        while end < length and not value[end].isspace():
            end += 1
        url = value[position:end]
        descriptor = ""
        if url.endswith(","):
            url = url.rstrip(",")
        else:
            comma = value.find(",", end)
            if comma < 0:
                comma = length
            descriptor = value[end:comma].strip()
            end = comma
        position = end
        yield url, descriptor


def rewrite_srcset(value: str, context: RewriteContext) -> str:
    candidates = []
    for url, descriptor in _srcset_candidates(value):
        rewritten = rewrite_reference(url, context)
        candidates.append(f"{rewritten} {descriptor}".rstrip())
    return ", ".join(candidates)


def rewrite_css(css: str, context: RewriteContext) -> str:
    """Rewrite every ``url(...)`` token in ``css``, keeping its quote style."""

    def replace(match: re.Match) -> str:
        quote_char, reference = match.group(1), match.group(2)
        resolved = resolve_reference(reference, context.base_url)
        if resolved is None:
            return match.group(0)
        return f"url({quote_char}{context.wrap(str(resolved))}{quote_char})"

    return CSS_URL_PATTERN.sub(replace, css)


def rewrite_meta_refresh(content: str, context: RewriteContext) -> str:
    def replace(match: re.Match) -> str:
        prefix, quote_char, reference = match.groups()
        rewritten = rewrite_reference(reference, context)
        return f"{prefix}{quote_char}{rewritten}{quote_char}"

    return META_REFRESH_URL_PATTERN.sub(replace, content, count=1)


def _rewrite_attributes(soup: BeautifulSoup, context: RewriteContext) -> None:
    for tag_name, attributes in REWRITABLE_ATTRIBUTES.items():
        for element in soup.find_all(tag_name):
            for attribute in attributes:
                value = element.get(attribute)
                if value:
                    element[attribute] = rewrite_reference(value, context)

    for tag_name, attributes in SRCSET_ATTRIBUTES.items():
        for element in soup.find_all(tag_name):
            for attribute in attributes:
                value = element.get(attribute)
                if value:
                    element[attribute] = rewrite_srcset(value, context)

    for meta in soup.find_all("meta", attrs={"http-equiv": True, "content": True}):
        if meta["http-equiv"].strip().lower() == "refresh":
            meta["content"] = rewrite_meta_refresh(meta["content"], context)


def _rewrite_styles(soup: BeautifulSoup, context: RewriteContext) -> None:
    for style in soup.find_all("style"):
        if style.string:
            style.string = rewrite_css(style.string, context)

    for element in soup.find_all(style=True):
        element["style"] = rewrite_css(element["style"], context)


def _document_context(
    soup: BeautifulSoup, context: RewriteContext
) -> RewriteContext:
    """Honour the document's own ``<base href>``, which browsers apply first."""
    base = soup.find("base", href=True)
    if base is None:
        return context
    resolved = resolve_reference(base["href"], context.base_url)
    if resolved is None:
        return context
    return replace(context, base_url=resolved)


def _set_base(soup: BeautifulSoup, context: RewriteContext) -> None:
    href = context.wrap(str(context.base_url))
    existing = soup.find_all("base", href=True)
    if existing:
        # the first base wins, later ones are ignored by browsers
        existing[0]["href"] = href
        for base in existing[1:]:
            del base["href"]
        return

    head = soup.head
    if head is None:
        head = soup.new_tag("head")
        if soup.html is not None:
            soup.html.insert(0, head)
        else:
            soup.insert(0, head)
    head.append(soup.new_tag("base", href=href))


def rewrite_html(
    html: bytes, context: RewriteContext, encoding: Optional[str] = None
) -> str:
    """
    Rewrite a complete HTML document so that it keeps browsing through the proxy.

    Resource and navigation attributes, srcset candidates, meta refresh
    targets and CSS ``url()`` references in ``<style>`` blocks and ``style``
    attributes are resolved against ``context.base_url`` and proxy-wrapped.
    A document that declares its own ``<base href>`` is resolved against it.
    The first ``<base>`` then points at the wrapped base URL, or one is
    appended to the head, so that URLs added later by scripts also resolve
    through the proxy.
    Script contents are left alone.

    Args:
        html: The raw document bytes.
        context: Resolution base and proxy prefix.
        encoding: Charset announced by the upstream Content-Type, if any.

    Returns:
        The rewritten document as text, to be sent as UTF-8.
    """
    soup = BeautifulSoup(html, "html.parser", from_encoding=encoding)
    context = _document_context(soup, context)
    _rewrite_attributes(soup, context)
    _rewrite_styles(soup, context)
    _set_base(soup, context)
    logger.debug(f"[Rewrite] Rewrote document based at {context.base_url}")
    return str(soup)
