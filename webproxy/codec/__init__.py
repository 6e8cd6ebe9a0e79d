from typing import Dict, Optional, Tuple

from webproxy.errors import DecodeError

from .base import ProxyCodec, inbound_url, is_proxy_url, validate_target
from .path import OriginPathCodec, PathCodec
from .query import QueryCodec
from .token import TokenCodec, TokenQueryCodec, decode_token, encode_token

CODECS: Tuple[ProxyCodec, ...] = (
    QueryCodec(),
    TokenCodec(),
    TokenQueryCodec(),
    PathCodec(),
    OriginPathCodec(),
)
CODECS_BY_NAME: Dict[str, ProxyCodec] = {codec.name: codec for codec in CODECS}


def get_codec(name: str) -> ProxyCodec:
    return CODECS_BY_NAME[name]


def codec_for_url(url: str, proxy_origin: str) -> Optional[ProxyCodec]:
    """The codec whose route ``url`` points at, if any."""
    for codec in CODECS:
        if codec.owns_url(url, proxy_origin):
            return codec
    return None


def try_decode_proxy_url(url: Optional[str], proxy_origin: str) -> Optional[str]:
    """Target of a proxy URL, or None when ``url`` is not a decodable proxy URL."""
    if not url:
        return None
    codec = codec_for_url(url, proxy_origin)
    if codec is None:
        return None
    try:
        return codec.decode_url(url)
    except DecodeError:
        return None


__all__ = [
    "CODECS",
    "CODECS_BY_NAME",
    "ProxyCodec",
    "QueryCodec",
    "TokenCodec",
    "TokenQueryCodec",
    "PathCodec",
    "OriginPathCodec",
    "codec_for_url",
    "decode_token",
    "encode_token",
    "get_codec",
    "inbound_url",
    "is_proxy_url",
    "try_decode_proxy_url",
    "validate_target",
]
