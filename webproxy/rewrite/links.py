"""Encoding of absolute target URLs into proxy-relative references and back."""

import logging
import re
from typing import Optional
from urllib.parse import parse_qs, quote, unquote, urldefrag, urljoin, urlsplit

from webproxy.vars import PROXY_BASE_PATH

logger = logging.getLogger("uvicorn.error")

SKIPPED_PREFIXES = ("javascript:", "data:", "#", "mailto:", "tel:", "blob:", "about:")
REWRITTEN_SCHEMES = ("http", "https")


def proxy_url(absolute: str, prefix: str = PROXY_BASE_PATH) -> str:
    return f"{prefix}/proxy?url={quote(absolute, safe='')}"


def proxy_path_url(absolute: str, prefix: str = PROXY_BASE_PATH) -> str:
    """Path-embedded form, used where the query string gets replaced (GET forms)."""
    return f"{prefix}/p/{quote(absolute, safe='')}"


def websocket_url(absolute: str, ws_origin: str = "", prefix: str = PROXY_BASE_PATH) -> str:
    return f"{ws_origin}{prefix}/ws?url={quote(absolute, safe='')}"


def is_proxy_reference(value: str, prefix: str = PROXY_BASE_PATH) -> bool:
    v = value.strip()
    return (
        v.startswith(f"{prefix}/proxy?url=")
        or v.startswith(f"{prefix}/p/")
        or v.startswith(f"{prefix}/ws?url=")
    )


def unwrap_proxy_url(value: str, prefix: str = PROXY_BASE_PATH) -> Optional[str]:
    """Return the absolute target encoded in a proxy URL, or None."""
    try:
        parts = urlsplit(value)
    except ValueError:
        return None
    path = parts.path
    if path in (f"{prefix}/proxy", f"{prefix}/ws"):
        targets = parse_qs(parts.query).get("url")
        return targets[0] if targets else None
    if path.startswith(f"{prefix}/p/"):
        return unquote(path[len(f"{prefix}/p/"):]) or None
    return None


def resolve(value: str, base: str, prefix: str = PROXY_BASE_PATH) -> Optional[str]:
    """
    Resolve an embedded reference against ``base``.

    Returns None when the value must be left untouched: skipped schemes,
    fragment-only values, existing proxy references and unresolvable input.
    """
    stripped = value.strip()
    if not stripped:
        return None
    if stripped.lower().startswith(SKIPPED_PREFIXES):
        return None
    if is_proxy_reference(stripped, prefix):
        return None
    try:
        absolute = urljoin(base, stripped)
        scheme = urlsplit(absolute).scheme.lower()
    except ValueError as e:
        logger.debug(f"[Rewrite] Leaving unresolvable reference {stripped[:80]!r}: {e}")
        return None
    if scheme not in REWRITTEN_SCHEMES:
        return None
    return absolute


def rewrite_reference(value: str, base: str, prefix: str = PROXY_BASE_PATH) -> str:
    absolute = resolve(value, base, prefix)
    if absolute is None:
        return value
    absolute, fragment = urldefrag(absolute)
    rewritten = proxy_url(absolute, prefix)
    return f"{rewritten}#{fragment}" if fragment else rewritten


# "5; url=https://example.com/", "0;URL='/next'", "3"
REFRESH_PATTERN = re.compile(
    r"""^\s*(?P<delay>\d+(?:\.\d*)?)\s*
        (?:[;,]\s*(?:url\s*=\s*)?(?P<quote>['"]?)(?P<url>.*?)(?P=quote)\s*)?$""",
    re.IGNORECASE | re.DOTALL | re.VERBOSE,
)


def rewrite_refresh(value: str, base: str, prefix: str = PROXY_BASE_PATH) -> str:
    """Rewrite the URL of a refresh directive, keeping its delay."""
    match = REFRESH_PATTERN.match(value or "")
    if not match or not match.group("url"):
        return value
    rewritten = rewrite_reference(match.group("url"), base, prefix)
    return f"{match.group('delay')}; url={rewritten}"
