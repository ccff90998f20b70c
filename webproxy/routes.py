import html
import logging
from typing import List, Optional, Set, Tuple
from urllib.parse import unquote, urlencode

from fastapi import APIRouter, Depends, Request, WebSocket
from fastapi.responses import HTMLResponse, PlainTextResponse, Response
from opentelemetry import trace

from webproxy.access import KEY_QUERY_PARAM, access_denial, require_access
from webproxy.errors import WS_CLOSE_POLICY_VIOLATION, BlockedIP, ProxyError
from webproxy.forwarding.engine import ForwardingEngine
from webproxy.forwarding.response import build_client_response
from webproxy.guard.address_guard import AddressGuard
from webproxy.guard.target import TargetValidator
from webproxy.relay.websocket_relay import WebSocketRelay
from webproxy.rewrite.html_rewriter import RewriteContext
from webproxy.session.store import SessionStore
from webproxy.utils.exception_logging import log_exception_with_details
from webproxy.utils.traced_requests import traced_request
from webproxy.vars import (
    PROXY_BASE_PATH,
    PROXY_KEY,
    PROXY_KEY_COOKIE_NAME,
    SCRIPT_POLICY,
    SESSION_COOKIE_SECURE,
)

router = APIRouter()
logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

session_store = SessionStore()
address_guard = AddressGuard()
validator = TargetValidator(address_guard)
engine = ForwardingEngine(session_store, validator)
relay = WebSocketRelay(session_store, validator)

if PROXY_BASE_PATH:
    router.prefix = PROXY_BASE_PATH
    logger.info(f"Using PROXY_BASE_PATH: {PROXY_BASE_PATH}")
else:
    logger.info("No PROXY_BASE_PATH set, using root path")

ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]
TARGET_QUERY_PARAM = "url"

LANDING_PAGE = """<!doctype html>
<html>
  <head><meta charset="utf-8"><title>Web Proxy</title></head>
  <body>
    <h2>Simple Web Proxy</h2>
    <form action="{action}">
      <input name="url" placeholder="https://example.com" required />
      <button>Open</button>
    </form>
  </body>
</html>
"""


def _reserved_params(*names: str) -> Set[str]:
    # the key is only ours to consume when one is configured
    reserved = set(names)
    if PROXY_KEY:
        reserved.add(KEY_QUERY_PARAM)
    return reserved


def _extra_query(request: Request, reserved: Set[str]) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in request.query_params.multi_items() if k not in reserved]


def _with_query(raw: Optional[str], extra: List[Tuple[str, str]]) -> Optional[str]:
    if not raw or not extra:
        return raw
    raw, hash_mark, fragment = raw.partition("#")
    separator = "&" if "?" in raw else "?"
    return f"{raw}{separator}{urlencode(extra)}{hash_mark}{fragment}"


def _ws_origin(request: Request) -> str:
    scheme = "wss" if request.url.scheme == "https" else "ws"
    return f"{scheme}://{request.url.netloc}"


def _cookie_path() -> str:
    return PROXY_BASE_PATH or "/"


def _finish(response: Response, sid: str, new_session: bool, persist_key: bool) -> Response:
    if new_session:
        response.set_cookie(
            session_store.cookie_name,
            sid,
            httponly=True,
            samesite="lax",
            secure=SESSION_COOKIE_SECURE,
            path=_cookie_path(),
        )
    if persist_key and PROXY_KEY:
        response.set_cookie(
            PROXY_KEY_COOKIE_NAME,
            PROXY_KEY,
            httponly=True,
            samesite="lax",
            secure=SESSION_COOKIE_SECURE,
            path=_cookie_path(),
        )
    return response


async def _proxy(
    request: Request, raw_target: Optional[str], reserved: Set[str], persist_key: bool
) -> Response:
    sid, new_session = session_store.sid_for(request.cookies)
    raw_target = _with_query(raw_target, _extra_query(request, reserved))
    with traced_request(
        tracer,
        operation="proxy_request",
        sid=sid,
        target=raw_target,
        start_message=f"[Proxy] {request.method} {raw_target!r} session={sid}",
        extra_attrs={"proxy.method": request.method},
    ) as span:
        try:
            target = await validator.validate(raw_target)
            body = await request.body()
            upstream = await engine.forward(
                request.method, target, request.headers.items(), body, sid
            )
            ctx = RewriteContext(
                base=upstream.target.url,
                prefix=PROXY_BASE_PATH,
                ws_origin=_ws_origin(request),
                script_policy=SCRIPT_POLICY,
            )
            response = await build_client_response(
                engine, upstream, ctx, method=request.method
            )
            span.set_attribute("proxy.status_code", upstream.status_code)
        except BlockedIP as e:
            logger.warning(f"[Proxy] BlockedIP: {e.detail}")
            span.set_attribute("proxy.error", "BlockedIP")
            response = PlainTextResponse(e.public_message, status_code=e.status_code)
        except ProxyError as e:
            logger.info(f"[Proxy] {type(e).__name__}: {e.detail}")
            span.set_attribute("proxy.error", type(e).__name__)
            response = PlainTextResponse(e.public_message, status_code=e.status_code)
        except Exception as e:
            log_exception_with_details(logger, "[Proxy]", e)
            span.set_attribute("proxy.error", type(e).__name__)
            response = PlainTextResponse("internal error", status_code=500)
    return _finish(response, sid, new_session, persist_key)


@router.get("/", response_class=HTMLResponse)
async def landing_page():
    return LANDING_PAGE.format(action=html.escape(f"{PROXY_BASE_PATH}/proxy"))


@router.api_route("/proxy", methods=ALL_METHODS)
async def proxy_query(request: Request, persist_key: bool = Depends(require_access)):
    """Proxy the URL given in the ``url`` query parameter."""
    return await _proxy(
        request,
        request.query_params.get(TARGET_QUERY_PARAM),
        _reserved_params(TARGET_QUERY_PARAM),
        persist_key,
    )


@router.api_route("/p/{encoded:path}", methods=ALL_METHODS)
async def proxy_path(
    request: Request, encoded: str, persist_key: bool = Depends(require_access)
):
    """Proxy a URL embedded, percent-encoded, in the path."""
    raw_path = request.scope.get("raw_path")
    marker = f"{PROXY_BASE_PATH}/p/"
    if raw_path:
        path = raw_path.decode("latin-1").split("?", 1)[0]
        index = path.find(marker)
        if index >= 0:
            encoded = unquote(path[index + len(marker):])
    return await _proxy(request, encoded, _reserved_params(), persist_key)


@router.websocket("/ws")
async def websocket_tunnel(websocket: WebSocket):
    reason = access_denial(websocket.headers, websocket.cookies, websocket.query_params)
    if reason:
        logger.warning(f"[Access] Denied WebSocket upgrade: {reason}")
        await websocket.close(code=WS_CLOSE_POLICY_VIOLATION)
        return
    sid, _ = session_store.sid_for(websocket.cookies)
    await relay.tunnel(websocket, websocket.query_params.get("url"), sid)
