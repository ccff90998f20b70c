import logging
from typing import AsyncIterator, List, Optional, Tuple

from starlette.responses import Response, StreamingResponse

from webproxy.forwarding.engine import ForwardingEngine, UpstreamResponse
from webproxy.rewrite.css import rewrite_css
from webproxy.rewrite.headers import filter_response_headers
from webproxy.rewrite.html_rewriter import RewriteContext, rewrite_bytes
from webproxy.utils.exception_logging import log_exception_with_details
from webproxy.vars import PROXY_CSP, REWRITE_CSS_URLS

logger = logging.getLogger("uvicorn.error")


def is_html(content_type: str) -> bool:
    media = content_type.split(";", 1)[0].strip().lower()
    return media in ("text/html", "application/xhtml+xml")


def is_css(content_type: str) -> bool:
    return content_type.split(";", 1)[0].strip().lower() == "text/css"


def _raw_headers(headers: List[Tuple[str, str]], encoding: str) -> List[Tuple[bytes, bytes]]:
    return [
        (name.lower().encode("latin-1"), value.encode(encoding, errors="replace"))
        for name, value in headers
    ]


async def stream_response(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
    """Stream the decoded upstream body, closing the upstream response at the end."""
    try:
        async for chunk in upstream.response.aiter_bytes():
            yield chunk
    finally:
        await upstream.aclose()


async def build_client_response(
    engine: ForwardingEngine,
    upstream: UpstreamResponse,
    ctx: RewriteContext,
    method: str = "GET",
    csp: Optional[str] = PROXY_CSP,
    rewrite_css_bodies: bool = REWRITE_CSS_URLS,
) -> Response:
    """
    Turn the terminal upstream response into the response sent to the browser.

    HTML (and optionally CSS) bodies are buffered and rewritten; everything
    else is streamed through untouched. ``Content-Type`` is forwarded verbatim.
    """
    content_type = upstream.headers.get("content-type", "")
    encoding = upstream.headers.encoding
    html = is_html(content_type)
    headers = filter_response_headers(
        upstream.headers.multi_items(),
        upstream.target.url,
        ctx.prefix,
        csp=csp if html else None,
    )

    if method == "HEAD" or upstream.status_code in (204, 304):
        await upstream.aclose()
        response = Response(status_code=upstream.status_code)
    elif html or (rewrite_css_bodies and is_css(content_type)):
        body = await engine.read_body(upstream)
        await upstream.aclose()
        charset = upstream.response.charset_encoding
        if html:
            body = rewrite_bytes(body, ctx, charset=charset)
        else:
            body = _rewrite_css_body(body, ctx, charset or "utf-8")
        response = Response(content=body, status_code=upstream.status_code)
    else:
        response = StreamingResponse(
            stream_response(upstream), status_code=upstream.status_code
        )

    response.raw_headers.extend(_raw_headers(headers, encoding))
    return response


def _rewrite_css_body(body: bytes, ctx: RewriteContext, charset: str) -> bytes:
    try:
        text = body.decode(charset, errors="replace")
        return rewrite_css(text, ctx.base, ctx.prefix).encode(charset, errors="replace")
    except LookupError as e:
        log_exception_with_details(
            logger, f"[Rewrite] Unknown charset {charset!r} for {ctx.base};", e, logging.WARNING
        )
        return body
