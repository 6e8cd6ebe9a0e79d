from typing import Dict, Optional, Tuple
from urllib.parse import quote

from webproxy.codec.base import ProxyCodec, merge_query, split_query, strip_query

URL_PARAM = "url"


class QueryCodec(ProxyCodec):
    """
    Target carried as a percent-encoded query value: ``/api/proxy?url=<target>``.
    Any other inbound query pairs (fields of a GET form submitted to the bare
    endpoint) are merged into the target's own query string.
    """

    name = "query"
    mount_path = "/api/proxy"
    usage = "/api/proxy?url=https%3A%2F%2Fwww.example.com%2F"

    def _encode(self, target_url: str, proxy_origin: str) -> str:
        return f"{proxy_origin}{self.mount_path}?{URL_PARAM}={quote(target_url, safe='')}"

    def _decode(self, tail: str, query: Optional[str], raw: str) -> str:
        if tail not in ("", "/"):
            raise self.missing(f"{URL_PARAM} parameter", raw)
        controls, rest = split_query(query, {URL_PARAM})
        target = controls.get(URL_PARAM, "").strip()
        if not target:
            raise self.missing(f"{URL_PARAM} parameter", raw)
        return merge_query(target, rest)

    def form_target(
        self, action_url: str, proxy_origin: str
    ) -> Tuple[str, Dict[str, str]]:
        return f"{proxy_origin}{self.mount_path}", {URL_PARAM: strip_query(action_url)}
