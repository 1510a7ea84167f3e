import httpx


class ProxyError(Exception):
    """Base class for failures of the proxy pipeline."""


class TargetResolutionError(ProxyError):
    """The encoded target could not be turned into an absolute URL."""

    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"Cannot resolve target URL from {raw!r}")


class UpstreamUnreachableError(ProxyError):
    """The upstream request failed before a usable response was received."""

    def __init__(self, target: httpx.URL, cause: Exception):
        self.target = target
        self.cause = cause
        super().__init__(f"Upstream request to {target} failed: {cause!r}")


class ClientDisconnectedError(ProxyError):
    """The client went away while the upstream body was still being read."""
