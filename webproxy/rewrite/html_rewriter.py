"""
HTML rewriting: every resource and navigation reference in a fetched page is
replaced with a proxy-relative reference so the browser keeps talking to the
proxy.

The document is parsed with BeautifulSoup (``html.parser``) rather than
rewritten with regular expressions over the raw markup. Regular expressions
are only applied to the contents of attributes, ``<style>`` blocks and
``<script>`` blocks.

Two script policies are supported:

- ``rewrite``: scripts are kept; string literals passed directly to
  ``fetch(...)`` and ``new WebSocket(...)`` are routed through the proxy and
  the WebSocket relay.
- ``strip``: ``<script>`` elements are removed, ``<noscript>`` contents are
  inlined and ``loading="lazy"`` is dropped so images load without script.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from webproxy.rewrite.css import rewrite_css
from webproxy.rewrite.links import (
    proxy_path_url,
    resolve,
    rewrite_reference,
    rewrite_refresh,
    websocket_url,
)
from webproxy.utils.exception_logging import log_exception_with_details
from webproxy.vars import PROXY_BASE_PATH, SCRIPT_POLICY

logger = logging.getLogger("uvicorn.error")

SCRIPT_POLICY_REWRITE = "rewrite"
SCRIPT_POLICY_STRIP = "strip"

URL_ATTRIBUTES = ("href", "src", "action", "data-src", "data-original", "poster")
SRCSET_ATTRIBUTES = ("srcset", "data-srcset")

FETCH_LITERAL = re.compile(
    r"""(?P<lead>\bfetch\s*\(\s*)(?P<quote>['"])(?P<url>[^'"\\\n]*)(?P=quote)"""
)
WEBSOCKET_LITERAL = re.compile(
    r"""(?P<lead>\bnew\s+WebSocket\s*\(\s*)(?P<quote>['"])(?P<url>[^'"\\\n]*)(?P=quote)"""
)


@dataclass(frozen=True)
class RewriteContext:
    """Per-response rewriting state."""

    base: str
    prefix: str = PROXY_BASE_PATH
    # ws:// or wss:// origin of the proxy itself; empty yields relative URLs
    ws_origin: str = ""
    script_policy: str = SCRIPT_POLICY


def rewrite_srcset(value: str, ctx: RewriteContext) -> str:
    candidates = []
    for candidate in value.split(","):
        parts = candidate.strip().split(None, 1)
        if not parts:
            continue
        url = rewrite_reference(parts[0], ctx.base, ctx.prefix)
        candidates.append(f"{url} {parts[1]}" if len(parts) > 1 else url)
    return ", ".join(candidates)


def _websocket_target(value: str, base: str) -> Optional[str]:
    try:
        parts = urlsplit(base)
        ws_base = parts._replace(scheme="wss" if parts.scheme == "https" else "ws").geturl()
        absolute = urljoin(ws_base, value.strip())
    except ValueError as e:
        logger.debug(f"[Rewrite] Leaving WebSocket literal {value[:80]!r}: {e}")
        return None
    if urlsplit(absolute).scheme not in ("ws", "wss"):
        return None
    return absolute


def rewrite_script_literals(script: str, ctx: RewriteContext) -> str:
    """Route literal fetch()/WebSocket() URLs through the proxy."""

    def _fetch(match: re.Match) -> str:
        original = match.group("url")
        rewritten = rewrite_reference(original, ctx.base, ctx.prefix)
        if rewritten == original:
            return match.group(0)
        q = match.group("quote")
        return f"{match.group('lead')}{q}{rewritten}{q}"

    def _websocket(match: re.Match) -> str:
        absolute = _websocket_target(match.group("url"), ctx.base)
        if absolute is None:
            return match.group(0)
        q = match.group("quote")
        return f"{match.group('lead')}{q}{websocket_url(absolute, ctx.ws_origin, ctx.prefix)}{q}"

    script = FETCH_LITERAL.sub(_fetch, script)
    return WEBSOCKET_LITERAL.sub(_websocket, script)


def _apply_base_element(soup: BeautifulSoup, ctx: RewriteContext) -> RewriteContext:
    bases = soup.find_all("base")
    if bases and bases[0].get("href"):
        absolute = resolve(bases[0]["href"], ctx.base, ctx.prefix)
        if absolute is not None:
            ctx = replace(ctx, base=absolute)
    for element in bases:
        element.decompose()
    return ctx


def _apply_script_policy(soup: BeautifulSoup, ctx: RewriteContext) -> None:
    if ctx.script_policy == SCRIPT_POLICY_STRIP:
        for script in soup.find_all("script"):
            script.decompose()
        for noscript in soup.find_all("noscript"):
            noscript.unwrap()
        for tag in soup.find_all(attrs={"loading": True}):
            if str(tag["loading"]).lower() == "lazy":
                del tag["loading"]
        return

    for script in soup.find_all("script"):
        if script.string:
            script.string = rewrite_script_literals(str(script.string), ctx)


def _rewrite_meta_refresh(soup: BeautifulSoup, ctx: RewriteContext) -> None:
    for meta in soup.find_all("meta", attrs={"http-equiv": True}):
        if str(meta["http-equiv"]).strip().lower() != "refresh":
            continue
        if meta.get("content"):
            meta["content"] = rewrite_refresh(meta["content"], ctx.base, ctx.prefix)


def _rewrite_attributes(soup: BeautifulSoup, ctx: RewriteContext) -> None:
    for tag in soup.find_all(True):
        rewritten = False
        for attr in URL_ATTRIBUTES:
            value = tag.get(attr)
            if not isinstance(value, str):
                continue
            if attr == "action":
                absolute = resolve(value, ctx.base, ctx.prefix)
                if absolute is not None:
                    tag[attr] = proxy_path_url(absolute, ctx.prefix)
            else:
                tag[attr] = rewrite_reference(value, ctx.base, ctx.prefix)
            rewritten = rewritten or tag[attr] != value
        # subresource hashes describe the upstream URL, not the proxied one
        if rewritten and tag.has_attr("integrity"):
            del tag["integrity"]
        for attr in SRCSET_ATTRIBUTES:
            value = tag.get(attr)
            if isinstance(value, str) and value.strip():
                tag[attr] = rewrite_srcset(value, ctx)
        style = tag.get("style")
        if isinstance(style, str) and "url(" in style.lower():
            tag["style"] = rewrite_css(style, ctx.base, ctx.prefix)

    for style in soup.find_all("style"):
        if style.string:
            style.string = rewrite_css(str(style.string), ctx.base, ctx.prefix)


def _transform(soup: BeautifulSoup, ctx: RewriteContext) -> None:
    ctx = _apply_base_element(soup, ctx)
    _apply_script_policy(soup, ctx)
    _rewrite_meta_refresh(soup, ctx)
    _rewrite_attributes(soup, ctx)


def rewrite(html: str, ctx: RewriteContext) -> str:
    """Rewrite an HTML document; the original is returned if rewriting fails."""
    try:
        soup = BeautifulSoup(html, "html.parser")
        _transform(soup, ctx)
        return str(soup)
    except Exception as e:
        log_exception_with_details(
            logger, f"[Rewrite] Passing {ctx.base} through unmodified;", e, logging.WARNING
        )
        return html


def rewrite_bytes(content: bytes, ctx: RewriteContext, charset: Optional[str] = None) -> bytes:
    """
    Rewrite an undecoded HTML body.

    The declared ``charset`` wins; otherwise the encoding is sniffed from the
    document. The result is encoded back into the same encoding so the
    upstream ``Content-Type`` can be forwarded verbatim.
    """
    if not content:
        return content
    try:
        soup = BeautifulSoup(content, "html.parser", from_encoding=charset)
        _transform(soup, ctx)
        return soup.encode(soup.original_encoding or "utf-8")
    except Exception as e:
        log_exception_with_details(
            logger, f"[Rewrite] Passing {ctx.base} through unmodified;", e, logging.WARNING
        )
        return content
