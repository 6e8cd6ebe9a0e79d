import re

from webproxy.rewrite.context import RewriteContext
from webproxy.rewrite.urls import rewrite_url

# url(...) with double, single or no quotes.
_CSS_URL = re.compile(
    r"""url\(\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<uq>[^\s)"']*))\s*\)""",
    re.IGNORECASE,
)
# @import "..." / @import '...'; the url() form is handled by _CSS_URL.
_CSS_IMPORT = re.compile(
    r"""(?P<lead>@import\s+)(?P<quote>["'])(?P<url>[^"']*)(?P=quote)""",
    re.IGNORECASE,
)


def rewrite_css(css: str, ctx: RewriteContext) -> str:
    """Rewrite url() and @import references in a stylesheet or style attribute."""

    def _url(match: re.Match) -> str:
        if match.group("dq") is not None:
            quote, value = '"', match.group("dq")
        elif match.group("sq") is not None:
            quote, value = "'", match.group("sq")
        else:
            quote, value = '"', match.group("uq")
        rewritten = rewrite_url(value, ctx)
        if rewritten == value:
            return match.group(0)
        return f"url({quote}{rewritten}{quote})"

    def _import(match: re.Match) -> str:
        value = match.group("url")
        rewritten = rewrite_url(value, ctx)
        if rewritten == value:
            return match.group(0)
        quote = match.group("quote")
        return f"{match.group('lead')}{quote}{rewritten}{quote}"

    css = _CSS_URL.sub(_url, css)
    return _CSS_IMPORT.sub(_import, css)
