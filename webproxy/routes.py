import logging
from datetime import datetime, timezone
from typing import Optional, Union

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from opentelemetry import trace

from webproxy.codec import (
    CODECS,
    ProxyCodec,
    decode_token,
    encode_token,
    get_codec,
    try_decode_proxy_url,
    validate_target,
)
from webproxy.errors import DecodeError, ProxyError
from webproxy.forwarding import forward, get_http_client
from webproxy.forwarding.headers import CORS_HEADERS
from webproxy.guard import ensure_allowed
from webproxy.models import (
    CodecInfo,
    DecodeResult,
    EncodeResult,
    ErrorDetail,
    StatusResponse,
)
from webproxy.rewrite import build_rewrite_context, proxy_origin_for
from webproxy.utils import (
    find_exception_in_exception_groups,
    format_exception_message,
    log_exception_with_details,
    traced_request,
)
from webproxy.vars import PROXY_BASE_PATH, SERVICE_NAME, SERVICE_VERSION

router = APIRouter(prefix=PROXY_BASE_PATH)
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def preflight_response(request: Request) -> Response:
    """Answer a CORS preflight locally; it never reaches the target."""
    headers = dict(CORS_HEADERS)
    requested = request.headers.get("access-control-request-headers")
    if requested:
        headers["access-control-allow-headers"] = requested
    headers["access-control-max-age"] = "86400"
    return Response(status_code=204, headers=headers)


async def proxy_with_codec(
    request: Request, codec: ProxyCodec, client: httpx.AsyncClient
) -> Response:
    if request.method == "OPTIONS":
        return preflight_response(request)
    try:
        target_url = codec.decode(request)
        with traced_request(
            tracer,
            operation="proxy_request",
            target_url=target_url,
            codec=codec.name,
            method=request.method,
            start_message=f"[Proxy] {request.method} {target_url} ({codec.name})",
        ):
            ensure_allowed(target_url)
            ctx = build_rewrite_context(request, target_url, codec)
            return await forward(request, target_url, ctx, client)
    except HTTPException as e:
        raise e
    except DecodeError as e:
        logger.warning(f"[Codec] {e.message}: {e.url}")
        raise e.to_http_exception()
    except ProxyError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_exception_with_details(logger, "[Proxy]", e)
        child_proxy_error = find_exception_in_exception_groups(e, ProxyError)
        if child_proxy_error:
            raise child_proxy_error.to_http_exception()
        raise HTTPException(
            status_code=500,
            detail=ErrorDetail(
                error="Internal server error",
                message=format_exception_message(e),
                url=str(request.url),
            ).model_dump(),
        )


@router.api_route("/api/proxy", methods=PROXY_METHODS)
async def proxy_query(
    request: Request, client: httpx.AsyncClient = Depends(get_http_client)
):
    """/api/proxy?url=<percent-encoded target>"""
    return await proxy_with_codec(request, get_codec("query"), client)


@router.api_route("/api/encode", methods=PROXY_METHODS)
@router.api_route("/api/encode/{token}", methods=PROXY_METHODS)
@router.api_route("/api/encode/{token}/{tail:path}", methods=PROXY_METHODS)
async def proxy_token(
    request: Request,
    token: str = "",
    tail: str = "",
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """/api/encode/<base64url target>[/<path relative to an encoded origin>]"""
    return await proxy_with_codec(request, get_codec("token"), client)


@router.api_route("/api/pp", methods=PROXY_METHODS)
async def proxy_token_query(
    request: Request, client: httpx.AsyncClient = Depends(get_http_client)
):
    """/api/pp?__cpo=<base64url target>"""
    return await proxy_with_codec(request, get_codec("token-query"), client)


@router.api_route("/api/browse", methods=PROXY_METHODS)
@router.api_route("/api/browse/{segments:path}", methods=PROXY_METHODS)
async def proxy_path(
    request: Request,
    segments: str = "",
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """/api/browse/<scheme>/<host>/<path>"""
    return await proxy_with_codec(request, get_codec("path"), client)


@router.api_route("/api/proxy-path", methods=PROXY_METHODS)
@router.api_route("/api/proxy-path/{segments:path}", methods=PROXY_METHODS)
async def proxy_origin_path(
    request: Request,
    segments: str = "",
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """/api/proxy-path/<percent-encoded origin>/<path>"""
    return await proxy_with_codec(request, get_codec("origin-path"), client)


def _helper_error(error: str, message: str, url: Optional[str] = None) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail=ErrorDetail(error=error, message=message, url=url).model_dump(),
    )


def _normalize_target(data: str) -> str:
    target = data.strip()
    if "://" not in target:
        target = f"https://{target}"
    return validate_target(target, data)


def _decode_helper_input(data: str, proxy_origin: str) -> str:
    value = data.strip()
    candidate = f"{proxy_origin}{value}" if value.startswith("/") else value
    target = try_decode_proxy_url(candidate, proxy_origin)
    if target is not None:
        return target
    return validate_target(decode_token(value, data), data)


@router.get("/api/encode-helper", response_model=Union[EncodeResult, DecodeResult])
async def encode_helper(
    request: Request,
    action: Optional[str] = Query(None, description="encode or decode"),
    data: Optional[str] = Query(None, description="Target URL, proxy URL or token"),
):
    """Encode a target URL in every proxy form, or decode a proxy URL or token."""
    if action not in ("encode", "decode"):
        raise _helper_error("Invalid action", "Use action=encode or action=decode")
    if not data:
        raise _helper_error("Missing data parameter", f"Provide data to {action}")

    proxy_origin = proxy_origin_for(request)
    try:
        if action == "encode":
            target = _normalize_target(data)
            return EncodeResult(
                original=target,
                encoded=encode_token(target),
                proxy_urls={
                    codec.name: codec.encode(target, proxy_origin) for codec in CODECS
                },
            )
        target = _decode_helper_input(data, proxy_origin)
        return DecodeResult(encoded=data, decoded=target)
    except ProxyError as e:
        raise e.to_http_exception()


@router.get("/api/status", response_model=StatusResponse)
async def status(request: Request):
    proxy_origin = proxy_origin_for(request)
    example = "https://www.google.com"
    return StatusResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        service=SERVICE_NAME,
        status="operational",
        version=SERVICE_VERSION,
        proxy_methods={
            codec.name: CodecInfo(
                endpoint=f"{PROXY_BASE_PATH}{codec.mount_path}",
                usage=codec.usage,
                example=codec.encode(example, proxy_origin),
            )
            for codec in CODECS
        },
        utilities={
            "encode_helper": f"{proxy_origin}/api/encode-helper?action=encode&data=URL",
            "debug": f"{proxy_origin}/api/debug",
            "status": f"{proxy_origin}/api/status",
        },
        features=[
            "Five interchangeable proxy URL encodings",
            "HTML and CSS URL rewriting with base tag injection",
            "Client-side interception of navigation, fetch and XHR",
            "Streaming of non-rewritable content",
            "Blocking of local and internal network targets",
        ],
    )


@router.api_route("/api/debug", methods=["GET", "POST"])
async def debug(request: Request):
    """Echo of the current request for troubleshooting; nothing is forwarded."""
    body = None
    if request.method == "POST":
        body = (await request.body()).decode("utf-8", errors="replace")
    headers = dict(request.headers)
    proxy_origin = proxy_origin_for(request)
    return {
        "message": "Proxy Debug Information",
        "debug": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": request.method,
            "url": str(request.url),
            "query": dict(request.query_params),
            "headers": headers,
            "body": body,
            "proxy_origin": proxy_origin,
            "referer_target": try_decode_proxy_url(headers.get("referer"), proxy_origin),
        },
        "instructions": {
            "usage": "Call /api/debug from a proxied page to see what reaches the proxy",
            "common_issues": [
                "Missing url parameter: check that ?url= is percent-encoded",
                "Wrong links: set PUBLIC_URL when running behind another proxy",
                "403 responses: local and private network targets are refused",
                "Relative URLs: compare the document base with the injected <base> tag",
            ],
        },
    }
