import httpx
import pytest

from pageproxy.proxy.headers import (
    narrow_accept_encoding,
    prepare_outbound_headers,
    relax_csp,
    relax_security_headers,
    strip_hop_by_hop,
    unwrap_referer,
)

TARGET = httpx.URL("https://example.com/dir/page.html")


class TestRelaxSecurityHeaders:
    """Test relaxing headers that block framing."""

    def test_frame_options_and_frame_ancestors_removed(self):
        headers = httpx.Headers(
            {
                "X-Frame-Options": "DENY",
                "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none'",
            }
        )

        result = relax_security_headers(headers)

        assert "x-frame-options" not in result
        assert result["content-security-policy"] == "default-src 'self'"

    def test_frame_options_removed_case_insensitively(self):
        headers = httpx.Headers([("x-FRAME-options", "SAMEORIGIN")])

        result = relax_security_headers(headers)

        assert "X-Frame-Options" not in result

    def test_other_csp_directives_kept(self):
        """script-src and friends still apply after relaxing."""
        policy = (
            "script-src 'self' cdn.example.com;"
            "FRAME-ANCESTORS https://a.example;  img-src *"
        )
        headers = httpx.Headers({"Content-Security-Policy": policy})

        result = relax_security_headers(headers)

        assert (
            result["content-security-policy"]
            == "script-src 'self' cdn.example.com; img-src *"
        )

    def test_csp_with_only_frame_ancestors_dropped(self):
        headers = httpx.Headers(
            {"Content-Security-Policy": "frame-ancestors 'self'"}
        )

        result = relax_security_headers(headers)

        assert "content-security-policy" not in result

    def test_accept_ranges_defaults_to_bytes(self):
        result = relax_security_headers(httpx.Headers({"Content-Type": "video/mp4"}))

        assert result["accept-ranges"] == "bytes"

    def test_existing_accept_ranges_preserved(self):
        result = relax_security_headers(httpx.Headers({"Accept-Ranges": "none"}))

        assert result["accept-ranges"] == "none"
        assert result.get_list("accept-ranges") == ["none"]

    def test_other_headers_pass_through(self):
        headers = httpx.Headers(
            [
                ("content-type", "text/html"),
                ("content-length", "512"),
                ("set-cookie", "a=1; Path=/"),
                ("set-cookie", "b=2; Path=/"),
                ("cache-control", "no-store"),
            ]
        )

        result = relax_security_headers(headers)

        assert result["content-type"] == "text/html"
        assert result["content-length"] == "512"
        assert result["cache-control"] == "no-store"
        assert result.get_list("set-cookie") == ["a=1; Path=/", "b=2; Path=/"]

    def test_input_not_modified(self):
        headers = httpx.Headers({"X-Frame-Options": "DENY"})

        relax_security_headers(headers)

        assert headers["x-frame-options"] == "DENY"
        assert "accept-ranges" not in headers


class TestRelaxCsp:
    def test_empty_fragments_dropped(self):
        result = relax_csp("default-src 'self';; ;img-src *;")

        assert result == "default-src 'self'; img-src *"

    def test_empty_policy(self):
        assert relax_csp("") == ""


class TestStripHopByHop:
    def test_hop_by_hop_headers_removed(self):
        headers = httpx.Headers(
            {
                "Connection": "keep-alive",
                "Keep-Alive": "timeout=5",
                "Transfer-Encoding": "chunked",
                "Upgrade": "h2c",
                "Content-Type": "text/plain",
            }
        )

        result = strip_hop_by_hop(headers)

        assert list(result.keys()) == ["content-type"]

    def test_extra_names_removed(self):
        headers = httpx.Headers({"Content-Length": "10", "Content-Encoding": "gzip"})

        result = strip_hop_by_hop(headers, extra=("Content-Length",))

        assert "content-length" not in result
        assert result["content-encoding"] == "gzip"


class TestNarrowAcceptEncoding:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("gzip, deflate, br, zstd", "gzip, deflate"),
            ("br;q=1.0, gzip;q=0.8", "gzip"),
            ("br", "identity"),
            ("", "identity"),
            (None, "identity"),
            ("GZIP, gzip", "gzip"),
        ],
    )
    def test_only_decodable_codings_kept(self, value, expected):
        assert narrow_accept_encoding(value) == expected


class TestUnwrapReferer:
    def test_proxy_referer_unwrapped(self):
        referer = "http://localhost:1837/proxy/https%3A%2F%2Fexample.com%2Fdir%2F"

        assert unwrap_referer(referer, "/proxy") == "https://example.com/dir/"

    def test_foreign_referer_ignored(self):
        assert unwrap_referer("https://search.example/?q=x", "/proxy") is None

    def test_unresolvable_proxy_referer_ignored(self):
        assert unwrap_referer("http://localhost:1837/proxy/", "/proxy") is None


class TestPrepareOutboundHeaders:
    """Test the headers sent to the upstream."""

    def test_host_and_origin_overridden(self):
        inbound = [
            (b"host", b"localhost:1837"),
            (b"origin", b"http://localhost:1837"),
            (b"user-agent", b"test-agent"),
        ]

        result = prepare_outbound_headers(inbound, TARGET, "/proxy")

        assert result["host"] == "example.com"
        assert result["origin"] == "https://example.com"
        assert result["user-agent"] == "test-agent"

    def test_non_default_port_kept_in_host(self):
        target = httpx.URL("http://example.com:8080/")

        result = prepare_outbound_headers([], target, "/proxy")

        assert result["host"] == "example.com:8080"
        assert result["origin"] == "http://example.com:8080"

    def test_framing_headers_not_forwarded(self):
        inbound = [
            (b"content-length", b"42"),
            (b"connection", b"keep-alive"),
            (b"transfer-encoding", b"chunked"),
            (b"cookie", b"session=abc"),
        ]

        result = prepare_outbound_headers(inbound, TARGET, "/proxy")

        assert "content-length" not in result
        assert "connection" not in result
        assert "transfer-encoding" not in result
        assert result["cookie"] == "session=abc"

    def test_accept_encoding_narrowed(self):
        inbound = [(b"accept-encoding", b"gzip, deflate, br")]

        result = prepare_outbound_headers(inbound, TARGET, "/proxy")

        assert result["accept-encoding"] == "gzip, deflate"

    def test_accept_encoding_not_added(self):
        result = prepare_outbound_headers([], TARGET, "/proxy")

        assert "accept-encoding" not in result

    def test_proxy_referer_translated(self):
        inbound = [
            (
                b"referer",
                b"http://localhost:1837/proxy/https%3A%2F%2Fexample.com%2Findex.html",
            )
        ]

        result = prepare_outbound_headers(inbound, TARGET, "/proxy")

        assert result["referer"] == "https://example.com/index.html"

    def test_other_referer_kept(self):
        inbound = [(b"referer", b"https://elsewhere.example/")]

        result = prepare_outbound_headers(inbound, TARGET, "/proxy")

        assert result["referer"] == "https://elsewhere.example/"
