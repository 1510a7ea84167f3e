from typing import Iterable, List, Optional, Tuple

import httpx

from pageproxy.proxy.target import resolve_target
from pageproxy.proxy.errors import TargetResolutionError

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Content codings httpx can decode without optional extras
DECODABLE_ENCODINGS = ("gzip", "deflate")


def _directives(policy: str) -> List[str]:
    return [d.strip() for d in policy.split(";") if d.strip()]


def relax_csp(policy: str) -> str:
    """Drop every frame-ancestors directive from a Content-Security-Policy."""
    kept = [
        directive
        for directive in _directives(policy)
        if not directive.lower().startswith("frame-ancestors")
    ]
    return "; ".join(kept)


def relax_security_headers(headers: httpx.Headers) -> httpx.Headers:
    """
    Relax the upstream headers that would stop the page from being framed.

    - X-Frame-Options is removed entirely.
    - frame-ancestors is removed from Content-Security-Policy; every other
      directive is kept, so script restrictions still apply.
    - Accept-Ranges defaults to ``bytes`` when upstream did not send one.

    Everything else is returned untouched and in order. The input is not
    modified.
    """
    relaxed: List[Tuple[str, str]] = []
    has_accept_ranges = False

    for name, value in headers.multi_items():
        lowered = name.lower()
        if lowered == "x-frame-options":
            continue
        if lowered == "content-security-policy":
            value = relax_csp(value)
            if not value:
                continue
        if lowered == "accept-ranges":
            has_accept_ranges = True
        relaxed.append((name, value))

    if not has_accept_ranges:
        relaxed.append(("accept-ranges", "bytes"))

    return httpx.Headers(relaxed)


def strip_hop_by_hop(
    headers: httpx.Headers, extra: Iterable[str] = ()
) -> httpx.Headers:
    """Return a copy of ``headers`` without hop-by-hop and ``extra`` names."""
    dropped = HOP_BY_HOP_HEADERS | {name.lower() for name in extra}
    return httpx.Headers(
        [
            (name, value)
            for name, value in headers.multi_items()
            if name.lower() not in dropped
        ]
    )


def narrow_accept_encoding(value: Optional[str]) -> str:
    """
    Keep only the codings the proxy can decode when it must rewrite a body.

    Falls back to ``identity`` when the client accepts none of them.
    """
    accepted = []
    for token in (value or "").split(","):
        coding = token.split(";", 1)[0].strip().lower()
        if coding in DECODABLE_ENCODINGS and coding not in accepted:
            accepted.append(coding)
    return ", ".join(accepted) if accepted else "identity"


def unwrap_referer(referer: str, proxy_prefix: str) -> Optional[str]:
    """Translate a Referer pointing at this proxy back to the URL it wraps."""
    path = httpx.URL(referer).raw_path.decode("ascii").split("?", 1)[0]
    marker = proxy_prefix.rstrip("/") + "/"
    if not path.startswith(marker):
        return None
    try:
        return str(resolve_target(path[len(marker):]))
    except TargetResolutionError:
        return None


def prepare_outbound_headers(
    headers: Iterable[Tuple[str, str]], target: httpx.URL, proxy_prefix: str
) -> httpx.Headers:
    """
    Build the headers sent upstream for ``target``.

    Host and Origin are overridden so that virtual hosting and CORS checks on
    the target see its own origin instead of the proxy's.
    """
    outbound = strip_hop_by_hop(
        httpx.Headers(list(headers)), extra=("content-length",)
    )

    netloc = target.netloc.decode("ascii")
    outbound["host"] = netloc
    outbound["origin"] = f"{target.scheme}://{netloc}"

    if "accept-encoding" in outbound:
        outbound["accept-encoding"] = narrow_accept_encoding(
            outbound["accept-encoding"]
        )

    referer = outbound.get("referer")
    if referer:
        try:
            unwrapped = unwrap_referer(referer, proxy_prefix)
        except httpx.InvalidURL:
            unwrapped = None
        if unwrapped:
            outbound["referer"] = unwrapped

    return outbound
