from typing import Optional

from webproxy.rewrite.context import RewriteContext
from webproxy.rewrite.css import rewrite_css
from webproxy.rewrite.html import HtmlRewriter
from webproxy.rewrite.script import generate_client_script, inject_client_script
from webproxy.vars import INJECT_CLIENT_SCRIPT

HTML_TYPES = ("text/html", "application/xhtml+xml")
CSS_TYPES = ("text/css",)


def media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def content_kind(content_type: Optional[str]) -> Optional[str]:
    """"html", "css" or None for content that is passed through untouched."""
    media = media_type(content_type)
    if media in HTML_TYPES:
        return "html"
    if media in CSS_TYPES:
        return "css"
    return None


def rewrite_content(
    text: str,
    content_type: Optional[str],
    ctx: RewriteContext,
    inject_script: Optional[bool] = None,
) -> str:
    kind = content_kind(content_type)
    if kind == "css":
        return rewrite_css(text, ctx)
    if kind != "html":
        return text
    if inject_script is None:
        inject_script = INJECT_CLIENT_SCRIPT
    rewriter = HtmlRewriter(ctx)
    rewritten = rewriter.rewrite(text)
    if inject_script:
        # The script resolves against the document base found by the rewriter.
        rewritten = inject_client_script(rewritten, generate_client_script(rewriter.ctx))
    return rewritten
