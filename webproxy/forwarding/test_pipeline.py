"""
Tests for the forwarding pipeline.

Tests cover:
- Method, body and header forwarding
- Buffering and rewriting of HTML and CSS
- Streaming of every other content type
- Redirects relayed with a rewritten Location
- Upstream error statuses relayed untouched
- Mapping of transport failures (DNS, refused, TLS, protocol, timeout)
- Mid-stream failures and the deadline on streamed bodies
- Cancellation of the outbound fetch when the caller disconnects
"""

import asyncio
import socket
import ssl
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest
from fastapi import Request
from fastapi.responses import StreamingResponse

from webproxy.codec import PathCodec
from webproxy.errors import (
    ClientDisconnected,
    UpstreamConnectError,
    UpstreamConnectionRefused,
    UpstreamNameResolutionError,
    UpstreamProtocolError,
    UpstreamTimeout,
    UpstreamTLSError,
)
from webproxy.forwarding import forward, map_transport_error
from webproxy.rewrite import RewriteContext

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

    def _create(method="GET", body=b"", headers=None, disconnected=False):
        request = Mock(spec=Request)
        request.method = method
        request.headers = headers or {"host": "proxy.test", "user-agent": "test-agent"}
        request.body = AsyncMock(return_value=body)
        request.is_disconnected = AsyncMock(return_value=disconnected)
        return request

    return _create


def client_for(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)


async def read_body(response):
    if isinstance(response, StreamingResponse):
        chunks = []
        async for chunk in response.body_iterator:
            chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
        return b"".join(chunks)
    return response.body


class TestForwardRequest:
    """The outbound request mirrors the inbound one."""

    @pytest.mark.asyncio
    async def test_post_body_and_method(self, mock_request, ctx):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = request.content
            seen["headers"] = request.headers
            return httpx.Response(201, json={"ok": True})

        async with client_for(handler) as client:
            response = await forward(
                mock_request("POST", b'{"name": "x"}'), TARGET, ctx, client
            )

        assert response.status_code == 201
        assert seen["method"] == "POST"
        assert seen["url"] == TARGET
        assert seen["body"] == b'{"name": "x"}'
        assert seen["headers"]["host"] == "example.com"
        assert seen["headers"]["accept-encoding"] == "gzip, deflate"

    @pytest.mark.asyncio
    async def test_get_sends_no_body(self, mock_request, ctx):
        seen = {}

        def handler(request: httpx.Request):
            seen["body"] = request.content
            return httpx.Response(204)

        request = mock_request("GET", b"ignored")
        async with client_for(handler) as client:
            response = await forward(request, TARGET, ctx, client)

        assert response.status_code == 204
        assert seen["body"] == b""
        request.body.assert_not_called()


class TestBufferedRewriting:
    """HTML and CSS are rewritten; the body is re-encoded as UTF-8."""

    @pytest.mark.asyncio
    async def test_html_rewritten(self, mock_request, ctx):
        html = '<html><head></head><body><a href="/next">n</a></body></html>'

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "text/html"}, content=html.encode()
            )

        async with client_for(handler) as client:
            response = await forward(mock_request(), TARGET, ctx, client)

        body = (await read_body(response)).decode("utf-8")
        assert not isinstance(response, StreamingResponse)
        assert response.headers["content-type"] == "text/html; charset=utf-8"
        assert f'href="{BROWSE}/https/example.com/next"' in body
        assert "data-proxy-client" in body
        assert int(response.headers["content-length"]) == len(body.encode("utf-8"))

    @pytest.mark.asyncio
    async def test_declared_charset_is_honoured(self, mock_request, ctx):
        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "text/html; charset=iso-8859-1"},
                content="<p>café</p>".encode("latin-1"),
            )

        async with client_for(handler) as client:
            response = await forward(mock_request(), TARGET, ctx, client)

        assert "<p>café</p>" in (await read_body(response)).decode("utf-8")

    @pytest.mark.asyncio
    async def test_css_rewritten(self, mock_request, ctx):
        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "text/css"},
                content=b"body { background: url(/bg.png) }",
            )

        async with client_for(handler) as client:
            response = await forward(mock_request(), TARGET, ctx, client)

        body = (await read_body(response)).decode("utf-8")
        assert f'url("{BROWSE}/https/example.com/bg.png")' in body

    @pytest.mark.asyncio
    async def test_oversized_html_is_streamed_unmodified(self, mock_request, ctx):
        html = b'<a href="/x">x</a>' * 10

        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/html"}, content=html)

        with patch("webproxy.forwarding.pipeline.MAX_REWRITE_BYTES", 32):
            async with client_for(handler) as client:
                response = await forward(mock_request(), TARGET, ctx, client)
                body = await read_body(response)

        assert isinstance(response, StreamingResponse)
        assert body == html


class TestStreaming:
    """Non-rewritable content is streamed in bounded chunks."""

    @pytest.mark.asyncio
    async def test_binary_streamed(self, mock_request, ctx):
        payload = bytes(range(256)) * 1024

        async def chunks():
            for i in range(0, len(payload), 10000):
                yield payload[i:i + 10000]

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "image/png"}, content=chunks()
            )

        with patch("webproxy.forwarding.pipeline.STREAM_CHUNK_SIZE", 4096):
            async with client_for(handler) as client:
                response = await forward(mock_request(), TARGET, ctx, client)
                received = []
                async for chunk in response.body_iterator:
                    received.append(chunk)

        assert isinstance(response, StreamingResponse)
        assert response.headers["content-type"] == "image/png"
        assert "content-length" not in response.headers
        assert b"".join(received) == payload
        assert max(len(chunk) for chunk in received) <= 4096

    @pytest.mark.asyncio
    async def test_json_not_rewritten(self, mock_request, ctx):
        content = b'{"next": "/page/2"}'

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "application/json"}, content=content
            )

        async with client_for(handler) as client:
            response = await forward(mock_request(), TARGET, ctx, client)
            body = await read_body(response)

        assert body == content


class TestRedirectsAndStatuses:
    @pytest.mark.asyncio
    async def test_redirect_location_rewritten(self, mock_request, ctx):
        def handler(request):
            return httpx.Response(302, headers={"location": "/login"})

        async with client_for(handler) as client:
            response = await forward(mock_request(), TARGET, ctx, client)

        assert response.status_code == 302
        assert response.headers["location"] == f"{BROWSE}/https/example.com/login"

    @pytest.mark.asyncio
    async def test_upstream_error_status_relayed(self, mock_request, ctx):
        def handler(request):
            return httpx.Response(
                404, headers={"content-type": "text/plain"}, content=b"not here"
            )

        async with client_for(handler) as client:
            response = await forward(mock_request(), TARGET, ctx, client)
            body = await read_body(response)

        assert response.status_code == 404
        assert body == b"not here"

    @pytest.mark.asyncio
    async def test_set_cookies_kept_separately(self, mock_request, ctx):
        def handler(request):
            return httpx.Response(
                200,
                headers=[
                    ("content-type", "text/plain"),
                    ("set-cookie", "a=1; Domain=example.com"),
                    ("set-cookie", "b=2"),
                ],
                content=b"ok",
            )

        async with client_for(handler) as client:
            response = await forward(mock_request(), TARGET, ctx, client)
            await read_body(response)

        assert response.headers.getlist("set-cookie") == [
            "a=1; Path=/api/browse/https/example.com/",
            "b=2; Path=/api/browse/https/example.com/",
        ]

    @pytest.mark.asyncio
    async def test_head_has_no_body(self, mock_request, ctx):
        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/html"})

        async with client_for(handler) as client:
            response = await forward(mock_request("HEAD"), TARGET, ctx, client)

        assert response.status_code == 200
        assert response.body == b""


class TestTransportErrors:
    """httpx failures map onto the proxy's own error classes."""

    @pytest.mark.parametrize(
        "exc,error_class,status,classification",
        [
            (
                httpx.ConnectError("[Errno -2] Name or service not known"),
                UpstreamNameResolutionError,
                404,
                "Domain not found",
            ),
            (
                httpx.ConnectError("[Errno 111] Connection refused"),
                UpstreamConnectionRefused,
                502,
                "Connection refused",
            ),
            (
                httpx.ConnectError(
                    "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed"
                ),
                UpstreamTLSError,
                502,
                "TLS handshake failed",
            ),
            (
                httpx.ConnectError("[Errno 101] Network is unreachable"),
                UpstreamConnectError,
                502,
                "Connection failed",
            ),
            (
                httpx.RemoteProtocolError("peer closed"),
                UpstreamProtocolError,
                502,
                "Bad gateway",
            ),
            (httpx.ReadTimeout("timed out"), UpstreamTimeout, 504, "Gateway timeout"),
        ],
    )
    @pytest.mark.asyncio
    async def test_mapping(
        self, mock_request, ctx, exc, error_class, status, classification
    ):
        def handler(request):
            raise exc

        async with client_for(handler) as client:
            with pytest.raises(error_class) as exc_info:
                await forward(mock_request(), TARGET, ctx, client)

        assert exc_info.value.status_code == status
        assert exc_info.value.error == classification
        assert exc_info.value.url == TARGET

    def test_dns_failure_found_in_cause(self):
        cause = socket.gaierror(-3, "Temporary failure")
        exc = httpx.ConnectError("connection failed")
        exc.__cause__ = cause
        assert isinstance(map_transport_error(exc, TARGET), UpstreamNameResolutionError)

    def test_tls_failure_found_in_cause(self):
        exc = httpx.ConnectError("connection failed")
        exc.__cause__ = ssl.SSLError(1, "handshake failure")
        error = map_transport_error(exc, TARGET)
        assert isinstance(error, UpstreamTLSError)
        assert error.status_code == 502

    def test_refusal_found_in_cause(self):
        exc = httpx.ConnectError("connection failed")
        exc.__context__ = ConnectionRefusedError(111, "refused")
        assert isinstance(map_transport_error(exc, TARGET), UpstreamConnectionRefused)

    @pytest.mark.asyncio
    async def test_deadline(self, mock_request, ctx):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200)

        with patch("webproxy.forwarding.pipeline.PROXY_TIMEOUT", 0.05):
            async with client_for(handler) as client:
                with pytest.raises(UpstreamTimeout):
                    await forward(mock_request(), TARGET, ctx, client)


class TestStreamFailures:
    """Failures after the headers were relayed abort the body instead of truncating it."""

    @pytest.mark.asyncio
    async def test_read_error_is_raised(self, mock_request, ctx):
        async def chunks():
            yield b"x" * 100
            raise httpx.ReadError("connection reset by peer")

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "application/octet-stream"}, content=chunks()
            )

        received = []
        with patch("webproxy.forwarding.pipeline.STREAM_CHUNK_SIZE", 50):
            async with client_for(handler) as client:
                response = await forward(mock_request(), TARGET, ctx, client)
                assert response.status_code == 200
                with pytest.raises(httpx.ReadError):
                    async for chunk in response.body_iterator:
                        received.append(chunk)

        assert b"".join(received) == b"x" * 100

    @pytest.mark.asyncio
    async def test_stream_bounded_by_deadline(self, mock_request, ctx):
        async def chunks():
            yield b"first"
            await asyncio.sleep(2)
            yield b"late"

        def handler(request):
            return httpx.Response(200, headers={"content-type": "video/mp4"}, content=chunks())

        received = []
        with patch("webproxy.forwarding.pipeline.PROXY_TIMEOUT", 0.2), patch(
            "webproxy.forwarding.pipeline.STREAM_CHUNK_SIZE", 5
        ):
            async with client_for(handler) as client:
                response = await forward(mock_request(), TARGET, ctx, client)
                with pytest.raises(UpstreamTimeout):
                    async for chunk in response.body_iterator:
                        received.append(chunk)

        assert received == [b"first"]


class TestClientDisconnect:
    """A caller that goes away cancels the outbound fetch."""

    @pytest.mark.asyncio
    async def test_pending_send_is_cancelled(self, mock_request, ctx):
        state = {"cancelled": False}

        async def handler(request):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                state["cancelled"] = True
                raise
            return httpx.Response(200)

        loop = asyncio.get_running_loop()
        started = loop.time()
        async with client_for(handler) as client:
            with pytest.raises(ClientDisconnected) as exc_info:
                await forward(mock_request(disconnected=True), TARGET, ctx, client)

        assert loop.time() - started < 1
        assert state["cancelled"] is True
        assert exc_info.value.url == TARGET

    @pytest.mark.asyncio
    async def test_buffering_is_abandoned(self, mock_request, ctx):
        connected = {"value": True}

        async def chunks():
            yield b"<html><body>"
            connected["value"] = False
            await asyncio.sleep(5)
            yield b"</body></html>"

        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/html"}, content=chunks())

        request = mock_request()
        request.is_disconnected = AsyncMock(side_effect=lambda: not connected["value"])

        loop = asyncio.get_running_loop()
        started = loop.time()
        async with client_for(handler) as client:
            with pytest.raises(ClientDisconnected):
                await forward(request, TARGET, ctx, client)

        assert loop.time() - started < 1

    @pytest.mark.asyncio
    async def test_connected_client_is_served(self, mock_request, ctx):
        async def handler(request):
            await asyncio.sleep(0.3)
            return httpx.Response(200, headers={"content-type": "text/plain"}, content=b"ok")

        request = mock_request()
        async with client_for(handler) as client:
            response = await forward(request, TARGET, ctx, client)

        assert response.status_code == 200
        assert request.is_disconnected.await_count >= 1
