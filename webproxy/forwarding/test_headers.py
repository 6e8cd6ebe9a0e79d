from unittest.mock import Mock

import httpx
import pytest
from fastapi import Request

from webproxy.codec import PathCodec, QueryCodec
from webproxy.forwarding.headers import (
    UPSTREAM_ACCEPT_ENCODING,
    prepare_request_headers,
    rewrite_location_header,
    rewrite_set_cookie,
    sanitize_response_headers,
)
from webproxy.rewrite import RewriteContext
from webproxy.vars import DEFAULT_USER_AGENT

PROXY_ORIGIN = "https://proxy.test"
BROWSE = f"{PROXY_ORIGIN}/api/browse"
TARGET = "https://example.com/a/page"


@pytest.fixture
def ctx():
    return RewriteContext(
        target_url=TARGET, base_url=TARGET, proxy_origin=PROXY_ORIGIN, codec=PathCodec()
    )


@pytest.fixture
def mock_request():
    """Create a mock FastAPI Request object."""
    request = Mock(spec=Request)
    request.method = "GET"
    request.headers = {
        "host": "proxy.test",
        "user-agent": "test-agent",
        "accept": "text/html",
        "accept-encoding": "br, zstd",
        "connection": "keep-alive",
        "content-length": "12",
        "cookie": "session=abc",
        "x-forwarded-for": "10.0.0.1",
        "x-real-ip": "10.0.0.1",
        "forwarded": "for=10.0.0.1",
    }
    request.client.host = "192.168.1.100"
    return request


class TestPrepareRequestHeaders:
    """Outbound headers identify the target site, not the proxy."""

    def test_forwarding_and_hop_by_hop_removed(self, mock_request, ctx):
        headers = prepare_request_headers(mock_request, TARGET, ctx)
        for name in (
            "host",
            "connection",
            "content-length",
            "x-forwarded-for",
            "x-real-ip",
            "forwarded",
        ):
            assert name not in headers
        assert headers["accept"] == "text/html"
        assert headers["cookie"] == "session=abc"
        assert headers["user-agent"] == "test-agent"

    def test_accept_encoding_replaced(self, mock_request, ctx):
        headers = prepare_request_headers(mock_request, TARGET, ctx)
        assert headers["accept-encoding"] == UPSTREAM_ACCEPT_ENCODING

    def test_referer_defaults_to_target(self, mock_request, ctx):
        headers = prepare_request_headers(mock_request, TARGET, ctx)
        assert headers["referer"] == TARGET

    def test_referer_is_decoded(self, mock_request, ctx):
        mock_request.headers["referer"] = f"{BROWSE}/https/example.com/previous"
        headers = prepare_request_headers(mock_request, TARGET, ctx)
        assert headers["referer"] == "https://example.com/previous"

    def test_origin_points_at_target(self, mock_request, ctx):
        mock_request.headers["origin"] = PROXY_ORIGIN
        headers = prepare_request_headers(mock_request, TARGET, ctx)
        assert headers["origin"] == "https://example.com"

    def test_origin_not_invented(self, mock_request, ctx):
        assert "origin" not in prepare_request_headers(mock_request, TARGET, ctx)

    def test_default_user_agent(self, mock_request, ctx):
        del mock_request.headers["user-agent"]
        headers = prepare_request_headers(mock_request, TARGET, ctx)
        assert headers["user-agent"] == DEFAULT_USER_AGENT


class TestRewriteLocationHeader:
    def test_root_relative(self, ctx):
        assert rewrite_location_header("/login", TARGET, ctx) == (
            f"{BROWSE}/https/example.com/login"
        )

    def test_document_relative(self, ctx):
        assert rewrite_location_header("next", TARGET, ctx) == (
            f"{BROWSE}/https/example.com/a/next"
        )

    def test_absolute_other_host(self, ctx):
        assert rewrite_location_header("https://accounts.example.org/", TARGET, ctx) == (
            f"{BROWSE}/https/accounts.example.org/"
        )

    def test_empty(self, ctx):
        assert rewrite_location_header("", TARGET, ctx) == ""


class TestRewriteSetCookie:
    SCOPE = "/api/browse/https/example.com"

    def test_domain_removed_and_path_scoped(self):
        result = rewrite_set_cookie(
            "sid=1; Domain=.example.com; Path=/app; HttpOnly", self.SCOPE
        )
        assert result.startswith("sid=1")
        assert "Domain" not in result
        assert f"Path={self.SCOPE}/app" in result
        assert "HttpOnly" in result

    def test_plain_cookie_gets_site_root(self):
        assert rewrite_set_cookie("b=2", self.SCOPE) == f"b=2; Path={self.SCOPE}/"

    def test_no_scope_drops_cookie(self):
        assert rewrite_set_cookie("b=2; Path=/", None) is None

    def test_unparseable_cookie_dropped(self):
        assert rewrite_set_cookie('bad"cookie', self.SCOPE) is None


class TestSanitizeResponseHeaders:
    def test_blocking_and_framing_headers_dropped(self, ctx):
        upstream = httpx.Headers(
            [
                ("content-type", "text/html"),
                ("content-length", "100"),
                ("content-encoding", "gzip"),
                ("transfer-encoding", "chunked"),
                ("connection", "close"),
                ("x-frame-options", "DENY"),
                ("content-security-policy", "default-src 'self'"),
                ("content-security-policy-report-only", "default-src 'self'"),
                ("strict-transport-security", "max-age=63072000"),
                ("cache-control", "no-cache"),
            ]
        )
        headers = dict(sanitize_response_headers(upstream, TARGET, ctx))
        assert headers["content-type"] == "text/html"
        assert headers["cache-control"] == "no-cache"
        for name in (
            "content-length",
            "content-encoding",
            "transfer-encoding",
            "connection",
            "x-frame-options",
            "content-security-policy",
            "content-security-policy-report-only",
            "strict-transport-security",
        ):
            assert name not in headers

    def test_cors_added(self, ctx):
        upstream = httpx.Headers({"access-control-allow-origin": "https://example.com"})
        headers = sanitize_response_headers(upstream, TARGET, ctx)
        assert ("access-control-allow-origin", "*") in headers
        assert [name for name, _ in headers].count("access-control-allow-origin") == 1

    def test_url_headers_rewritten(self, ctx):
        upstream = httpx.Headers(
            {
                "location": "/login?next=%2F",
                "content-location": "/a/page.en",
                "refresh": "3; url=/later",
            }
        )
        headers = dict(sanitize_response_headers(upstream, TARGET, ctx))
        assert headers["location"] == f"{BROWSE}/https/example.com/login?next=%2F"
        assert headers["content-location"] == f"{BROWSE}/https/example.com/a/page.en"
        assert headers["refresh"] == f"3; url={BROWSE}/https/example.com/later"

    def test_multiple_set_cookie_kept(self, ctx):
        upstream = httpx.Headers([("set-cookie", "a=1"), ("set-cookie", "b=2")])
        headers = sanitize_response_headers(upstream, TARGET, ctx)
        cookies = [value for name, value in headers if name == "set-cookie"]
        assert cookies == [
            "a=1; Path=/api/browse/https/example.com/",
            "b=2; Path=/api/browse/https/example.com/",
        ]

    def test_set_cookie_dropped_without_site_scope(self):
        query_ctx = RewriteContext(
            target_url=TARGET, base_url=TARGET, proxy_origin=PROXY_ORIGIN, codec=QueryCodec()
        )
        upstream = httpx.Headers([("set-cookie", "session=secret"), ("x-keep", "1")])
        headers = dict(sanitize_response_headers(upstream, TARGET, query_ctx))
        assert "set-cookie" not in headers
        assert headers["x-keep"] == "1"


class TestCookieIsolation:
    """A cookie relayed for one site never reaches another through the proxy."""

    def test_inbound_cookie_dropped_without_site_scope(self, mock_request):
        query_ctx = RewriteContext(
            target_url=TARGET, base_url=TARGET, proxy_origin=PROXY_ORIGIN, codec=QueryCodec()
        )
        headers = prepare_request_headers(mock_request, TARGET, query_ctx)
        assert "cookie" not in headers

    def test_inbound_cookie_kept_for_scoped_codec(self, mock_request, ctx):
        headers = prepare_request_headers(mock_request, TARGET, ctx)
        assert headers["cookie"] == "session=abc"
