"""
Classification and rewriting of single URL references found in fetched content.

Every candidate goes through ``classify_url`` first. Only fetchable references
are resolved against the Base Reference and handed to the codec; everything
else is returned exactly as it was written.
"""

import logging
import re
from enum import Enum
from typing import Optional
from urllib.parse import urljoin, urlsplit

from webproxy.codec import is_proxy_url
from webproxy.rewrite.context import RewriteContext

logger = logging.getLogger("uvicorn.error")

# Embedded data, script execution, mail, phone and browser-internal schemes.
SKIPPED_SCHEMES = {
    "data",
    "javascript",
    "vbscript",
    "mailto",
    "tel",
    "sms",
    "blob",
    "about",
}
FETCHABLE_SCHEMES = {"http", "https"}

_SCHEME = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")
# Browsers drop ASCII tab and newline characters anywhere in a URL.
_IGNORED_CHARS = re.compile(r"[\t\n\r]")


class UrlKind(Enum):
    EMPTY = "empty"
    FRAGMENT = "fragment"
    SKIPPED_SCHEME = "skipped-scheme"
    UNSUPPORTED_SCHEME = "unsupported-scheme"
    PROXIED = "proxied"
    ABSOLUTE = "absolute"
    PROTOCOL_RELATIVE = "protocol-relative"
    ROOT_RELATIVE = "root-relative"
    DOCUMENT_RELATIVE = "document-relative"


REWRITABLE_KINDS = {
    UrlKind.ABSOLUTE,
    UrlKind.PROTOCOL_RELATIVE,
    UrlKind.ROOT_RELATIVE,
    UrlKind.DOCUMENT_RELATIVE,
}


def _clean(raw: str) -> str:
    return _IGNORED_CHARS.sub("", raw).strip()


def classify_url(raw: Optional[str], ctx: RewriteContext) -> UrlKind:
    value = _clean(raw or "")
    if not value:
        return UrlKind.EMPTY
    if value.startswith("#"):
        return UrlKind.FRAGMENT
    if value.startswith("//"):
        return UrlKind.PROTOCOL_RELATIVE
    if value.startswith("/"):
        return UrlKind.ROOT_RELATIVE

    match = _SCHEME.match(value)
    if match:
        scheme = match.group(1).lower()
        if scheme in SKIPPED_SCHEMES:
            return UrlKind.SKIPPED_SCHEME
        if scheme not in FETCHABLE_SCHEMES:
            return UrlKind.UNSUPPORTED_SCHEME
        if is_proxy_url(value, ctx.proxy_origin):
            return UrlKind.PROXIED
        return UrlKind.ABSOLUTE
    return UrlKind.DOCUMENT_RELATIVE


def resolve_url(raw: Optional[str], ctx: RewriteContext) -> Optional[str]:
    """
    Absolute target URL for a rewritable reference, or None when the value
    must be left alone (skipped kinds, or anything that fails to resolve).
    """
    kind = classify_url(raw, ctx)
    if kind not in REWRITABLE_KINDS:
        return None
    value = _clean(raw)
    try:
        if kind is UrlKind.ABSOLUTE:
            absolute = value
        elif kind is UrlKind.PROTOCOL_RELATIVE:
            absolute = f"{urlsplit(ctx.base_url).scheme}:{value}"
        else:
            # Root-relative resolves against the base origin, document-relative
            # against the full base URL; urljoin covers both.
            absolute = urljoin(ctx.base_url, value)
        parts = urlsplit(absolute)
        if parts.scheme.lower() not in FETCHABLE_SCHEMES or not parts.hostname:
            raise ValueError("resolved URL has no fetchable scheme or host")
    except ValueError as e:
        logger.debug(f"[Rewrite] Leaving {raw!r} unmodified: {e}")
        return None
    return absolute


def rewrite_url(raw: Optional[str], ctx: RewriteContext) -> Optional[str]:
    """Proxy form of ``raw``; the input itself when it is not rewritable."""
    absolute = resolve_url(raw, ctx)
    if absolute is None:
        return raw
    return ctx.encode(absolute)


# Candidate separators: a comma followed by whitespace, or a comma directly
# after a density/width descriptor ("1x,", "640w,"). Commas inside data URIs
# match neither.
_SRCSET_SEPARATOR = re.compile(r"(?<=[0-9.][xwh]),\s*|,\s+")


def rewrite_srcset(value: str, ctx: RewriteContext) -> str:
    candidates = []
    for candidate in _SRCSET_SEPARATOR.split(value.strip()):
        pieces = candidate.strip().split(None, 1)
        if not pieces:
            continue
        url = rewrite_url(pieces[0], ctx)
        candidates.append(" ".join([url] + pieces[1:]))
    return ", ".join(candidates)


_META_REFRESH = re.compile(
    r"""^(?P<delay>\s*[0-9.]*\s*[;,]?\s*)(?P<key>url\s*=\s*)?(?P<quote>['"]?)(?P<url>[^'"]*?)(?P=quote)\s*$""",
    re.IGNORECASE | re.DOTALL,
)


def rewrite_meta_refresh(content: str, ctx: RewriteContext) -> str:
    """Rewrite the URL part of a refresh value such as ``5; url=/next``."""
    match = _META_REFRESH.match(content)
    if not match or not match.group("url").strip():
        return content
    url = match.group("url").strip()
    rewritten = rewrite_url(url, ctx)
    if rewritten == url:
        return content
    quote = match.group("quote")
    return f"{match.group('delay')}{match.group('key') or ''}{quote}{rewritten}{quote}"
