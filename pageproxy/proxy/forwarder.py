import asyncio
import logging
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    List,
    Optional,
    Tuple,
)

import httpx

from pageproxy.proxy.errors import ClientDisconnectedError, UpstreamUnreachableError
from pageproxy.proxy.headers import prepare_outbound_headers
from pageproxy.vars import (
    PROXY_CONNECT_TIMEOUT,
    PROXY_MAX_CONNECTIONS,
    PROXY_MAX_KEEPALIVE_CONNECTIONS,
    PROXY_MAX_REDIRECTS,
    PROXY_PREFIX,
    PROXY_TIMEOUT,
    PROXY_VERIFY_TLS,
)

logger = logging.getLogger("uvicorn.error")

BODYLESS_METHODS = {"GET", "HEAD"}

# Seconds between client liveness checks while an HTML body is buffered
DISCONNECT_POLL_INTERVAL = 0.5


def build_upstream_client(
    timeout: float = PROXY_TIMEOUT,
    connect_timeout: float = PROXY_CONNECT_TIMEOUT,
    max_redirects: int = PROXY_MAX_REDIRECTS,
    max_connections: int = PROXY_MAX_CONNECTIONS,
    max_keepalive_connections: int = PROXY_MAX_KEEPALIVE_CONNECTIONS,
    verify: bool = PROXY_VERIFY_TLS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create the client used for every upstream request.

    Redirects are followed up to ``max_redirects``; one more raises
    ``httpx.TooManyRedirects``. Cookies are not persisted between requests,
    each browser's own Cookie header is forwarded instead.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=connect_timeout),
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
        ),
        follow_redirects=True,
        max_redirects=max_redirects,
        verify=verify,
        transport=transport,
        cookies=CookieJar(policy=_RejectCookiesPolicy()),
    )


class _RejectCookiesPolicy(DefaultCookiePolicy):
    """The client is shared by all browsers, so it must never keep cookies."""

    def set_ok(self, cookie, request):
        return False


async def forward(
    client: httpx.AsyncClient,
    method: str,
    headers: Iterable[Tuple[bytes, bytes]],
    body: Optional[bytes],
    target: httpx.URL,
    proxy_prefix: str = PROXY_PREFIX,
) -> httpx.Response:
    """
    Issue the upstream request for ``target`` and return the open response.

    The response body has not been read; the caller must close the response.
    GET and HEAD never carry a body, even when the inbound request had one.

    Raises:
        UpstreamUnreachableError: on connection, DNS, timeout, protocol or
            redirect-bound failures.
    """
    method = method.upper()
    outbound_headers = prepare_outbound_headers(headers, target, proxy_prefix)
    content = None if method in BODYLESS_METHODS else (body or b"")

    try:
        request = client.build_request(
            method, target, headers=outbound_headers, content=content
        )
        return await client.send(request, stream=True)
    except (httpx.RequestError, httpx.InvalidURL) as e:
        raise UpstreamUnreachableError(target, e) from e


async def read_capped(
    body: AsyncIterator[bytes], limit: int
) -> Tuple[List[bytes], bool]:
    """
    Read body chunks until the stream ends or ``limit`` is exceeded.

    Returns the chunks read so far and whether the whole body was read.
    When the limit is exceeded ``body`` is left mid-iteration so the rest
    can still be relayed from the same iterator.
    """
    chunks: List[bytes] = []
    size = 0
    async for chunk in body:
        chunks.append(chunk)
        size += len(chunk)
        if size > limit:
            return chunks, False
    return chunks, True


async def read_capped_while_connected(
    body: AsyncIterator[bytes],
    limit: int,
    is_disconnected: Callable[[], Awaitable[bool]],
    poll_interval: float = DISCONNECT_POLL_INTERVAL,
) -> Tuple[List[bytes], bool]:
    """
    Same as ``read_capped``, but stop as soon as the client goes away.

    The read runs in its own task; whenever it has not finished within
    ``poll_interval`` seconds ``is_disconnected`` is consulted. On disconnect
    the read is cancelled before ``ClientDisconnectedError`` is raised, so the
    caller can close the upstream response without a read still in flight.
    """
    reading = asyncio.create_task(read_capped(body, limit))
    try:
        while True:
            done, _ = await asyncio.wait({reading}, timeout=poll_interval)
            if done:
                return reading.result()
            if await is_disconnected():
                raise ClientDisconnectedError()
    finally:
        if not reading.done():
            reading.cancel()
            await asyncio.wait({reading})


async def relay(
    response: httpx.Response,
    chunks: AsyncIterator[bytes],
    head: Iterable[bytes] = (),
) -> AsyncIterator[bytes]:
    """
    Yield ``head`` and then ``chunks``, closing ``response`` afterwards.

    The upstream response is closed however the relay ends, including when the
    client disconnects and the surrounding task is cancelled.
    """
    try:
        for chunk in head:
            yield chunk
        async for chunk in chunks:
            yield chunk
    except httpx.HTTPError as e:
        logger.warning(
            f"[Forwarder] Upstream stream from {response.url} broke: {e}"
        )
        raise
    finally:
        await close_shielded(response)


async def close_shielded(response: httpx.Response) -> None:
    """Close ``response`` even when the calling task is being cancelled."""
    await asyncio.shield(response.aclose())
