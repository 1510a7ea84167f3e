import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "pageproxy")
HOST = os.environ.get("HOSTNAME", "0.0.0.0")
PORT = int(os.environ.get("PORT", "1837"))

ALLOW_ORIGIN = os.environ.get("ALLOW_ORIGIN", "*")

PROXY_PREFIX = "/" + os.environ.get("PROXY_PREFIX", "/proxy").strip("/")
PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "30"))
PROXY_CONNECT_TIMEOUT = float(os.environ.get("PROXY_CONNECT_TIMEOUT", "10"))
PROXY_MAX_REDIRECTS = int(os.environ.get("PROXY_MAX_REDIRECTS", "2"))
PROXY_MAX_CONNECTIONS = int(os.environ.get("PROXY_MAX_CONNECTIONS", "100"))
PROXY_MAX_KEEPALIVE_CONNECTIONS = int(
    os.environ.get("PROXY_MAX_KEEPALIVE_CONNECTIONS", "20")
)
# HTML bodies above this size are relayed without rewriting
PROXY_MAX_REWRITE_BYTES = int(
    os.environ.get("PROXY_MAX_REWRITE_BYTES", str(10 * 1024 * 1024))
)
# Request bodies above this size are refused with 413
PROXY_MAX_REQUEST_BYTES = int(
    os.environ.get("PROXY_MAX_REQUEST_BYTES", str(32 * 1024 * 1024))
)
PROXY_VERIFY_TLS = os.getenv("PROXY_VERIFY_TLS", "true").lower() == "true"

REWRITE_HTML_URLS = os.environ.get("REWRITE_HTML_URLS", "true").lower() == "true"
REWRITE_BASE_FROM_FINAL_URL = (
    os.environ.get("REWRITE_BASE_FROM_FINAL_URL", "true").lower() == "true"
)

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
