"""
Forwarding of one proxied request to its target and conversion of the
upstream response into the response relayed to the caller.

HTML and CSS are buffered, rewritten and re-encoded as UTF-8. Every other
content type is streamed through in bounded chunks without being held in
memory. Redirects are never followed; their Location is rewritten instead.
The whole exchange, streamed bodies included, runs under one deadline of
PROXY_TIMEOUT seconds, and is abandoned as soon as the caller disconnects.
"""

import asyncio
import logging
import socket
import ssl
from dataclasses import dataclass
from typing import (
    AsyncIterator,
    Awaitable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse
from opentelemetry import trace

from webproxy.errors import (
    ClientDisconnected,
    DecodeError,
    ProxyError,
    UpstreamConnectError,
    UpstreamConnectionRefused,
    UpstreamNameResolutionError,
    UpstreamProtocolError,
    UpstreamTimeout,
    UpstreamTLSError,
)
from webproxy.forwarding.headers import (
    prepare_request_headers,
    sanitize_response_headers,
)
from webproxy.rewrite import RewriteContext, content_kind, media_type, rewrite_content
from webproxy.vars import MAX_REWRITE_BYTES, PROXY_TIMEOUT, STREAM_CHUNK_SIZE

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

BODYLESS_METHODS = {"GET", "HEAD"}
BODYLESS_STATUSES = {204, 304}

# Seconds between checks of the inbound connection while waiting on the target.
DISCONNECT_POLL_INTERVAL = 0.1

_DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "name resolution",
)
_TLS_FAILURE_MARKERS = ("[ssl", "ssl:", "certificate verify", "tls handshake")
_REFUSED_MARKERS = ("connection refused", "actively refused")


@dataclass
class ContentEnvelope:
    """Upstream response after header sanitization, ready to relay."""

    status_code: int
    headers: List[Tuple[str, str]]
    content_type: Optional[str] = None
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    rewritten: bool = False

    @property
    def streamed(self) -> bool:
        return self.stream is not None

    def to_response(self) -> Response:
        if self.stream is not None:
            response = StreamingResponse(self.stream, status_code=self.status_code)
        else:
            response = Response(content=self.body or b"", status_code=self.status_code)
        for name, value in self.headers:
            if name == "content-type":
                continue
            response.headers.append(name, value)
        if self.content_type:
            response.headers["content-type"] = self.content_type
        return response



def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _caused_by(
    exc: BaseException,
    cause: Union[Type[BaseException], Tuple[Type[BaseException], ...]],
    markers: Sequence[str],
) -> bool:
    if any(isinstance(link, cause) for link in _exception_chain(exc)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in markers)


def map_transport_error(exc: BaseException, target_url: str) -> ProxyError:
    """Classify an httpx failure into the error reported to the caller."""
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return UpstreamTimeout(
            f"Target did not respond within {PROXY_TIMEOUT:g} seconds", target_url
        )
    if isinstance(exc, httpx.ConnectError):
        if _caused_by(exc, socket.gaierror, _DNS_FAILURE_MARKERS):
            return UpstreamNameResolutionError(
                f"Could not resolve host of {target_url}", target_url
            )
        if _caused_by(exc, ssl.SSLError, _TLS_FAILURE_MARKERS):
            return UpstreamTLSError(f"Secure connection to target failed: {exc}", target_url)
        if _caused_by(exc, ConnectionRefusedError, _REFUSED_MARKERS):
            return UpstreamConnectionRefused(f"Target refused the connection: {exc}", target_url)
        return UpstreamConnectError(f"Could not connect to target: {exc}", target_url)
    if isinstance(exc, httpx.InvalidURL):
        return DecodeError(f"Target URL is not valid: {exc}", target_url)
    return UpstreamProtocolError(
        f"Target response failed: {type(exc).__name__}: {exc}", target_url
    )


def _remaining(deadline: float) -> float:
    return max(deadline - asyncio.get_running_loop().time(), 0.0)


def _decode_body(content: bytes, charset: Optional[str]) -> str:
    try:
        return content.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return content.decode("utf-8", errors="replace")


async def _watch_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


async def until_disconnected(
    request: Request, awaitable: Awaitable[T], timeout: float
) -> T:
    """
    Await ``awaitable`` for at most ``timeout`` seconds. It is cancelled as
    soon as the caller disconnects (ClientDisconnected) or the time is up
    (asyncio.TimeoutError).
    """
    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(_watch_disconnect(request))
    try:
        await asyncio.wait(
            {work, watcher}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (work, watcher):
            if not task.done():
                task.cancel()
        await asyncio.gather(work, watcher, return_exceptions=True)

    if work.done() and not work.cancelled():
        return work.result()
    if watcher.done() and not watcher.cancelled():
        raise ClientDisconnected("Client disconnected before the target answered")
    raise asyncio.TimeoutError()


async def relay_stream(
    response: httpx.Response,
    target_url: str,
    deadline: float,
    prefix: Sequence[bytes] = (),
) -> AsyncIterator[bytes]:
    """
    Yield ``prefix`` followed by the rest of the upstream body. The upstream
    response is closed when the stream ends, fails or the caller goes away.
    A failure after the headers were sent is re-raised so the connection is
    aborted instead of ending like a complete body.
    """
    chunks = response.aiter_bytes(chunk_size=STREAM_CHUNK_SIZE)
    try:
        for chunk in prefix:
            yield chunk
        while True:
            try:
                chunk = await asyncio.wait_for(
                    chunks.__anext__(), timeout=_remaining(deadline)
                )
            except StopAsyncIteration:
                break
            yield chunk
    except (httpx.TimeoutException, asyncio.TimeoutError) as e:
        logger.warning(f"[Proxy] Stream from {target_url} exceeded the deadline")
        raise map_transport_error(e, target_url) from e
    except httpx.HTTPError as e:
        logger.warning(f"[Proxy] Stream from {target_url} interrupted: {e}")
        raise
    finally:
        await response.aclose()


async def _read_bounded(response: httpx.Response) -> Tuple[List[bytes], bool]:
    """Read up to MAX_REWRITE_BYTES; the flag is True when the body was complete."""
    chunks: List[bytes] = []
    size = 0
    async for chunk in response.aiter_bytes(chunk_size=STREAM_CHUNK_SIZE):
        chunks.append(chunk)
        size += len(chunk)
        if size > MAX_REWRITE_BYTES:
            return chunks, False
    return chunks, True


async def build_envelope(
    response: httpx.Response,
    method: str,
    target_url: str,
    ctx: RewriteContext,
    deadline: float,
) -> ContentEnvelope:
    headers = sanitize_response_headers(response.headers, target_url, ctx)
    content_type = response.headers.get("content-type")
    envelope = ContentEnvelope(
        status_code=response.status_code, headers=headers, content_type=content_type
    )

    if method == "HEAD" or response.status_code in BODYLESS_STATUSES:
        await response.aclose()
        envelope.body = b""
        return envelope

    kind = content_kind(content_type)
    declared = response.headers.get("content-length", "")
    too_large = declared.isdigit() and int(declared) > MAX_REWRITE_BYTES
    if kind is None or too_large:
        envelope.stream = relay_stream(response, target_url, deadline)
        return envelope

    chunks, complete = await _read_bounded(response)
    if not complete:
        logger.info(
            f"[Proxy] {target_url} exceeds {MAX_REWRITE_BYTES} bytes, relaying unmodified"
        )
        envelope.stream = relay_stream(response, target_url, deadline, prefix=chunks)
        return envelope

    await response.aclose()
    text = _decode_body(b"".join(chunks), response.charset_encoding)
    rewritten = rewrite_content(text, content_type, ctx)
    envelope.body = rewritten.encode("utf-8")
    envelope.content_type = f"{media_type(content_type)}; charset=utf-8"
    envelope.rewritten = True
    return envelope


async def forward(
    request: Request,
    target_url: str,
    ctx: RewriteContext,
    client: httpx.AsyncClient,
) -> Response:
    """
    Forward ``request`` to ``target_url`` and relay the answer.
    A single attempt, bounded by PROXY_TIMEOUT and by the caller staying connected.
    """
    span = trace.get_current_span()
    deadline = asyncio.get_running_loop().time() + PROXY_TIMEOUT
    method = request.method.upper()

    headers = prepare_request_headers(request, target_url, ctx)
    body = None if method in BODYLESS_METHODS else await request.body()

    try:
        upstream_request = client.build_request(
            method, target_url, headers=headers, content=body
        )
        response = await until_disconnected(
            request, client.send(upstream_request, stream=True), _remaining(deadline)
        )
        try:
            envelope = await until_disconnected(
                request,
                build_envelope(response, method, target_url, ctx, deadline),
                _remaining(deadline),
            )
        except BaseException:
            await response.aclose()
            raise
    except ClientDisconnected as e:
        logger.info(f"[Proxy] Client went away, abandoning {target_url}")
        span.set_attribute("proxy.error", "client_disconnected")
        e.url = target_url
        raise
    except (httpx.TimeoutException, asyncio.TimeoutError) as e:
        error = map_transport_error(e, target_url)
        logger.warning(f"[Proxy] Timeout for {target_url}: {error.message}")
        span.set_attribute("proxy.error", "timeout")
        raise error from e
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        error = map_transport_error(e, target_url)
        logger.error(f"[Proxy] {error.error} for {target_url}: {e}")
        span.set_attribute("proxy.error", error.error)
        raise error from e

    span.set_attribute("proxy.status_code", envelope.status_code)
    span.set_attribute("proxy.rewritten", envelope.rewritten)
    span.set_attribute("proxy.streamed", envelope.streamed)
    for name, value in envelope.headers:
        if name == "location":
            span.set_attribute("proxy.rewritten_location", value)
    logger.debug(
        f"[Proxy] {method} {target_url} -> {envelope.status_code} "
        f"({'rewritten' if envelope.rewritten else 'streamed' if envelope.streamed else 'empty'})"
    )
    return envelope.to_response()
