"""
Regex driven HTML rewriting.

The document is scanned once for comments, raw-text elements (script, style,
textarea, title) and start tags. Comments and script bodies pass through
untouched, style bodies go through the CSS rewriter and start tags get their
URL-bearing attributes rewritten. Everything between tokens is copied as is,
so markup the scanner does not understand degrades to "not rewritten".
"""

import html
import logging
import re
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

from webproxy.codec import try_decode_proxy_url
from webproxy.rewrite.context import RewriteContext
from webproxy.rewrite.css import rewrite_css
from webproxy.rewrite.urls import (
    resolve_url,
    rewrite_meta_refresh,
    rewrite_srcset,
    rewrite_url,
)

logger = logging.getLogger("uvicorn.error")

_ATTRS = r"""(?:"[^"]*"|'[^']*'|[^'">])*"""

_TOKEN = re.compile(
    r"<!--.*?-->"
    r"|<(?P<raw>script|style|textarea|title)\b(?P<raw_attrs>" + _ATTRS + r")>"
    r"(?P<raw_body>.*?)</(?P=raw)\s*>"
    r"|<(?P<tag>[a-zA-Z][a-zA-Z0-9:\-]*)(?P<attrs>" + _ATTRS + r")>",
    re.IGNORECASE | re.DOTALL,
)

_ATTRIBUTE = re.compile(
    r"""(?P<lead>\s+)(?P<name>[^\s"'>/=]+)"""
    r"""(?:(?P<eq>\s*=\s*)(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<uq>[^\s"'=<>`]+)))?"""
)

_HTML_OPEN = re.compile(r"<html\b" + _ATTRS + r">", re.IGNORECASE)
_DOCTYPE = re.compile(r"^\s*<!doctype[^>]*>", re.IGNORECASE)

URL_ATTRIBUTES: Dict[str, Tuple[str, ...]] = {
    "a": ("href",),
    "area": ("href",),
    "link": ("href",),
    "script": ("src",),
    "img": ("src", "data-src", "lowsrc"),
    "image": ("href", "xlink:href"),
    "iframe": ("src", "data-src"),
    "frame": ("src",),
    "embed": ("src",),
    "object": ("data",),
    "source": ("src", "data-src"),
    "track": ("src",),
    "video": ("src", "poster", "data-src"),
    "audio": ("src",),
    "input": ("src", "formaction"),
    "button": ("formaction",),
    "body": ("background",),
    "table": ("background",),
    "td": ("background",),
    "th": ("background",),
}
SRCSET_ATTRIBUTES = ("srcset", "data-srcset")


def _attribute_value(match: re.Match) -> Optional[str]:
    for group in ("dq", "sq", "uq"):
        if match.group(group) is not None:
            return html.unescape(match.group(group))
    return None


def parse_attributes(attrs: str) -> Dict[str, Optional[str]]:
    """Lower-cased attribute names mapped to unescaped values; first one wins."""
    parsed: Dict[str, Optional[str]] = {}
    for match in _ATTRIBUTE.finditer(attrs):
        parsed.setdefault(match.group("name").lower(), _attribute_value(match))
    return parsed


def _attribute(name: str, value: str) -> str:
    return f' {name}="{html.escape(value, quote=True)}"'


def hidden_inputs(fields: Dict[str, str]) -> str:
    return "".join(
        f'<input type="hidden"{_attribute("name", key)}{_attribute("value", value)}>'
        for key, value in fields.items()
    )


class HtmlRewriter:
    """Single-use rewriter for one document."""

    def __init__(self, ctx: RewriteContext):
        self.ctx = ctx
        self.base_inserted = False

    def rewrite(self, document: str) -> str:
        self.ctx = self.ctx.with_base(self._document_base(document))
        rewritten = _TOKEN.sub(self._token, document)
        if not self.base_inserted:
            rewritten = self._insert_base_fallback(rewritten)
        return rewritten

    # Base Reference

    def _document_base(self, document: str) -> str:
        """href of the first <base> carrying one, resolved against the document URL."""
        for match in _TOKEN.finditer(document):
            tag = match.group("tag")
            if not tag or tag.lower() != "base":
                continue
            href = (parse_attributes(match.group("attrs")).get("href") or "").strip()
            if not href:
                continue
            base = try_decode_proxy_url(href, self.ctx.proxy_origin)
            if base is None:
                try:
                    base = urljoin(self.ctx.target_url, href)
                except ValueError:
                    logger.debug(f"[Rewrite] Ignoring unparseable <base href={href!r}>")
                    return self.ctx.target_url
            if not base.lower().startswith(("http://", "https://")):
                return self.ctx.target_url
            return base
        return self.ctx.target_url

    def _base_tag(self) -> str:
        self.base_inserted = True
        href = self.ctx.codec.encode_base(self.ctx.base_url, self.ctx.proxy_origin)
        return f"<base{_attribute('href', href)}>"

    def _insert_base_fallback(self, document: str) -> str:
        match = _HTML_OPEN.search(document) or _DOCTYPE.match(document)
        if match:
            return document[: match.end()] + self._base_tag() + document[match.end():]
        return self._base_tag() + document

    # Tokens

    def _token(self, match: re.Match) -> str:
        raw = match.group("raw")
        if raw:
            name = raw.lower()
            opening = self._start_tag(raw, match.group("raw_attrs"))
            body = match.group("raw_body")
            if name == "style":
                body = rewrite_css(body, self.ctx)
            return f"{opening}{body}</{raw}>"

        tag = match.group("tag")
        if not tag:
            # Comment.
            return match.group(0)
        name = tag.lower()
        if name == "base":
            return ""
        rewritten = self._start_tag(tag, match.group("attrs"))
        if name == "head" and not self.base_inserted:
            rewritten += self._base_tag()
        return rewritten

    def _start_tag(self, tag: str, attrs: str) -> str:
        name = tag.lower()
        parsed = parse_attributes(attrs)
        url_attributes = URL_ATTRIBUTES.get(name, ())
        is_refresh = (
            name == "meta" and (parsed.get("http-equiv") or "").strip().lower() == "refresh"
        )

        def _rewrite_attribute(match: re.Match) -> str:
            value = _attribute_value(match)
            if value is None:
                return match.group(0)
            attribute = match.group("name").lower()
            if attribute in SRCSET_ATTRIBUTES:
                rewritten = rewrite_srcset(value, self.ctx)
            elif attribute in url_attributes:
                rewritten = rewrite_url(value, self.ctx)
            elif attribute == "style":
                rewritten = rewrite_css(value, self.ctx)
            elif is_refresh and attribute == "content":
                rewritten = rewrite_meta_refresh(value, self.ctx)
            else:
                return match.group(0)
            if rewritten == value:
                return match.group(0)
            return match.group("lead") + _attribute(match.group("name"), rewritten).lstrip()

        attrs = _ATTRIBUTE.sub(_rewrite_attribute, attrs)
        if name == "form":
            return self._form(tag, attrs, parsed)
        return f"<{tag}{attrs}>"

    # Forms

    def _form_target(self, action: Optional[str]) -> Optional[str]:
        """Absolute submission target, or None when the form must be left alone."""
        action = (action or "").strip()
        if not action or action.startswith("#"):
            return self.ctx.target_url
        decoded = try_decode_proxy_url(action, self.ctx.proxy_origin)
        if decoded is not None:
            return decoded
        return resolve_url(action, self.ctx)

    def _form(self, tag: str, attrs: str, parsed: Dict[str, Optional[str]]) -> str:
        target = self._form_target(parsed.get("action"))
        if target is None:
            return f"<{tag}{attrs}>"

        method = (parsed.get("method") or "get").strip().lower()
        fields: Dict[str, str] = {}
        if method == "get":
            action, fields = self.ctx.codec.form_target(target, self.ctx.proxy_origin)
        else:
            action = self.ctx.encode(target)

        kept: List[str] = []
        for match in _ATTRIBUTE.finditer(attrs):
            if match.group("name").lower() != "action":
                kept.append(match.group(0))
        attrs = "".join(kept).rstrip()
        if attrs.endswith("/"):
            attrs = attrs[:-1].rstrip()
        return f"<{tag}{attrs}{_attribute('action', action)}>{hidden_inputs(fields)}"


def rewrite_html(document: str, ctx: RewriteContext) -> str:
    return HtmlRewriter(ctx).rewrite(document)
