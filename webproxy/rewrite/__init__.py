from .content import content_kind, media_type, rewrite_content
from .context import RewriteContext, build_rewrite_context, proxy_origin_for
from .css import rewrite_css
from .html import rewrite_html
from .script import generate_client_script, inject_client_script
from .urls import (
    UrlKind,
    classify_url,
    resolve_url,
    rewrite_meta_refresh,
    rewrite_srcset,
    rewrite_url,
)

__all__ = [
    "RewriteContext",
    "UrlKind",
    "build_rewrite_context",
    "classify_url",
    "content_kind",
    "generate_client_script",
    "inject_client_script",
    "media_type",
    "proxy_origin_for",
    "resolve_url",
    "rewrite_content",
    "rewrite_css",
    "rewrite_html",
    "rewrite_meta_refresh",
    "rewrite_srcset",
    "rewrite_url",
]
