"""Response header policy applied before anything is returned to the browser."""

from typing import Iterable, List, Optional, Tuple

from webproxy.rewrite.links import rewrite_reference, rewrite_refresh
from webproxy.vars import PROXY_BASE_PATH

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Headers of the target origin that would defeat rewriting or leak into the
# proxy's own origin.
BLOCKED_RESPONSE_HEADERS = {
    "content-security-policy",
    "content-security-policy-report-only",
    "x-frame-options",
    "cross-origin-opener-policy",
    "cross-origin-embedder-policy",
    "cross-origin-resource-policy",
    "content-encoding",
    "content-length",
    "set-cookie",
    "strict-transport-security",
    "clear-site-data",
    "alt-svc",
    "public-key-pins",
    "report-to",
    "nel",
}

LOCATION_HEADERS = {"location", "content-location"}


def filter_response_headers(
    headers: Iterable[Tuple[str, str]],
    base: str,
    prefix: str = PROXY_BASE_PATH,
    csp: Optional[str] = None,
) -> List[Tuple[str, str]]:
    """
    Return the upstream headers that may reach the browser.

    ``base`` is the final target URL, used to make ``Location``-style headers
    proxy-relative. When ``csp`` is given it is attached as the response's
    only Content-Security-Policy.
    """
    result: List[Tuple[str, str]] = []
    for name, value in headers:
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in BLOCKED_RESPONSE_HEADERS:
            continue
        if name_lower in LOCATION_HEADERS:
            value = rewrite_reference(value, base, prefix)
        elif name_lower == "refresh":
            value = rewrite_refresh(value, base, prefix)
        result.append((name, value))
    if csp:
        result.append(("content-security-policy", csp))
    return result
