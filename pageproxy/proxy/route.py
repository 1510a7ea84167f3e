import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask

from pageproxy.proxy.errors import (
    ClientDisconnectedError,
    TargetResolutionError,
    UpstreamUnreachableError,
)
from pageproxy.proxy.forwarder import (
    BODYLESS_METHODS,
    close_shielded,
    forward,
    read_capped,
    read_capped_while_connected,
    relay,
)
from pageproxy.proxy.headers import relax_security_headers, strip_hop_by_hop
from pageproxy.proxy.rewriter import RewriteContext, is_html, rewrite_html
from pageproxy.proxy.target import merge_query, resolve_target
from pageproxy.utils.exception_logging import log_exception_with_details
from pageproxy.utils.traced_requests import traced_request
from pageproxy.vars import (
    PROXY_MAX_REQUEST_BYTES,
    PROXY_MAX_REWRITE_BYTES,
    PROXY_PREFIX,
    REWRITE_BASE_FROM_FINAL_URL,
    REWRITE_HTML_URLS,
)

router = APIRouter(prefix=PROXY_PREFIX)
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# Statuses that never carry a body worth rewriting
BODYLESS_STATUSES = {204, 304}

# Logged for requests whose client went away before a response was ready
CLIENT_CLOSED_REQUEST = 499


def get_upstream_client(request: Request) -> httpx.AsyncClient:
    """The shared upstream client, created in the application lifespan."""
    return request.app.state.upstream_client


def extract_encoded_target(request: Request) -> str:
    """
    Return the still-encoded target that follows the proxy prefix.

    The raw path is used so that the target is decoded exactly once, by the
    resolver, and encoded slashes inside it survive routing.
    """
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    path = path.split("?", 1)[0]

    marker = PROXY_PREFIX.rstrip("/") + "/"
    index = path.find(marker)
    if index < 0:
        return ""
    return path[index + len(marker):]


def _attach_headers(response: Response, headers: httpx.Headers) -> Response:
    # raw headers keep repeated names such as Set-Cookie; ASGI wants them lowercase
    response.raw_headers.extend(
        (name.lower(), value) for name, value in headers.raw
    )
    return response


def _upstream_error(span, target: httpx.URL, exception: Exception) -> HTTPException:
    log_exception_with_details(
        logger, f"[Proxy] Upstream error for {target}:", exception
    )
    cause = getattr(exception, "cause", exception)
    span.set_attribute("proxy.error", type(cause).__name__)
    return HTTPException(status_code=502, detail="Upstream error")


def _streamed_response(upstream: httpx.Response, headers: httpx.Headers) -> Response:
    """Relay the raw upstream bytes; framing headers still describe them."""
    response = StreamingResponse(
        relay(upstream, upstream.aiter_raw()),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    return _attach_headers(response, headers)


async def _rewritten_response(
    request: Request,
    upstream: httpx.Response,
    headers: httpx.Headers,
    target: httpx.URL,
    span,
) -> Response:
    # the body is read decoded, so the upstream framing no longer applies
    headers = strip_hop_by_hop(
        headers, extra=("content-length", "content-encoding")
    )
    body = upstream.aiter_bytes()

    try:
        chunks, complete = await read_capped_while_connected(
            body, PROXY_MAX_REWRITE_BYTES, request.is_disconnected
        )
    except httpx.HTTPError as e:
        await close_shielded(upstream)
        raise _upstream_error(span, target, e)
    except ClientDisconnectedError:
        await close_shielded(upstream)
        logger.info(
            f"[Proxy] Client left before {target} was read, closed upstream"
        )
        span.set_attribute("proxy.error", "ClientDisconnected")
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except BaseException:
        await close_shielded(upstream)
        raise

    if not complete:
        logger.info(
            f"[Proxy] HTML from {target} exceeds {PROXY_MAX_REWRITE_BYTES} bytes, "
            "relaying it unmodified"
        )
        span.set_attribute("proxy.rewritten", False)
        response = StreamingResponse(
            relay(upstream, body, head=chunks),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        return _attach_headers(response, headers)

    await close_shielded(upstream)

    base = upstream.url if REWRITE_BASE_FROM_FINAL_URL else target
    context = RewriteContext(base_url=base, proxy_prefix=PROXY_PREFIX)
    html = rewrite_html(
        b"".join(chunks), context, encoding=upstream.charset_encoding
    )
    span.set_attribute("proxy.rewritten", True)

    headers["content-type"] = "text/html; charset=utf-8"
    response = Response(
        content=html.encode("utf-8"), status_code=upstream.status_code
    )
    return _attach_headers(response, headers)


async def _read_request_body(request: Request) -> bytes:
    """Read the inbound body, refusing anything over the request size cap."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > PROXY_MAX_REQUEST_BYTES:
        raise HTTPException(status_code=413, detail="Request body too large")

    chunks, complete = await read_capped(
        request.stream(), PROXY_MAX_REQUEST_BYTES
    )
    if not complete:
        raise HTTPException(status_code=413, detail="Request body too large")
    return b"".join(chunks)


def _should_rewrite(request: Request, upstream: httpx.Response) -> bool:
    return (
        REWRITE_HTML_URLS
        and request.method.upper() != "HEAD"
        and upstream.status_code not in BODYLESS_STATUSES
        and is_html(upstream.headers.get("content-type"))
    )


async def proxy_request(request: Request, client: httpx.AsyncClient) -> Response:
    """
    Fetch the target encoded in the request path and relay it to the client.

    - 400 when the target cannot be resolved.
    - 413 when the request body exceeds the configured cap.
    - 502 when the upstream cannot be reached, times out or redirects too often.
    - HTML is buffered, rewritten and sent as UTF-8; everything else is
      streamed unmodified. Framing-blocking headers are relaxed either way.
    """
    try:
        target = resolve_target(extract_encoded_target(request))
        target = merge_query(target, request.url.query)
    except (TargetResolutionError, httpx.InvalidURL):
        raise HTTPException(status_code=400, detail="Invalid target URL")

    with traced_request(
        tracer,
        "proxy_request",
        request.method,
        str(target),
        extra_attrs={"proxy.target_host": target.host},
    ) as span:
        body = None
        if request.method.upper() not in BODYLESS_METHODS:
            body = await _read_request_body(request)

        try:
            upstream = await forward(
                client, request.method, request.headers.raw, body, target
            )
        except UpstreamUnreachableError as e:
            raise _upstream_error(span, target, e)

        span.set_attribute("proxy.status_code", upstream.status_code)
        headers = relax_security_headers(strip_hop_by_hop(upstream.headers))

        if _should_rewrite(request, upstream):
            return await _rewritten_response(
                request, upstream, headers, target, span
            )

        span.set_attribute("proxy.rewritten", False)
        return _streamed_response(upstream, headers)


@router.api_route("", methods=PROXY_METHODS, include_in_schema=False)
@router.api_route("/{encoded_target:path}", methods=PROXY_METHODS)
async def proxy_all(
    request: Request, client: httpx.AsyncClient = Depends(get_upstream_client)
):
    """Catch-all route that proxies to the URL encoded in the path."""
    return await proxy_request(request, client)
