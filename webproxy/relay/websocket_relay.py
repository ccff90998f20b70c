"""
WebSocket relay: connects the browser's socket to a ws/wss target after the
same address checks the HTTP path applies, then copies frames both ways.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from fastapi import WebSocket
from opentelemetry import trace
from starlette.websockets import WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from webproxy.errors import (
    WS_CLOSE_INTERNAL_ERROR,
    ProxyError,
    WebSocketPolicyViolation,
)
from webproxy.guard.target import Target, TargetValidator
from webproxy.session.store import SessionStore
from webproxy.utils import mask_token
from webproxy.utils.exception_logging import log_exception_with_details
from webproxy.vars import PROXY_TIMEOUT

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Codes that may not be sent in a close frame.
_RESERVED_CLOSE_CODES = {1005, 1006, 1015}

Connector = Callable[..., object]


def sendable_close_code(code: Optional[int]) -> int:
    if code is None:
        return 1000
    if code in _RESERVED_CLOSE_CODES:
        return WS_CLOSE_INTERNAL_ERROR if code == 1006 else 1000
    return code


class WebSocketRelay:
    def __init__(
        self,
        store: SessionStore,
        validator: TargetValidator,
        timeout: float = PROXY_TIMEOUT,
        connector: Connector = connect,
    ):
        self.store = store
        self.validator = validator
        self.timeout = timeout
        self._connect = connector

    async def _reject(self, websocket: WebSocket, code: int, reason: str) -> None:
        if websocket.application_state == WebSocketState.CONNECTING:
            await websocket.accept()
        await self._close_client(websocket, code, reason)

    async def _close_client(self, websocket: WebSocket, code: int, reason: str = "") -> None:
        if (
            websocket.application_state != WebSocketState.CONNECTED
            or websocket.client_state != WebSocketState.CONNECTED
        ):
            return
        try:
            await websocket.close(code=code, reason=reason[:120])
        except (RuntimeError, WebSocketDisconnect):
            # client already gone
            pass

    async def tunnel(self, websocket: WebSocket, raw_target: Optional[str], sid: str) -> None:
        """
        Validate ``raw_target`` and relay frames until either side closes.

        Validation failures close the client with 1008 before any upstream
        socket is opened; unexpected failures close it with 1011.
        """
        with tracer.start_as_current_span("websocket_relay") as span:
            try:
                target = await self.validator.validate(raw_target, websocket=True)
            except ProxyError as e:
                violation = WebSocketPolicyViolation(f"{type(e).__name__}: {e.detail}")
                logger.warning(f"[WS-Relay] Rejected {raw_target!r}: {violation.detail}")
                span.set_attribute("proxy.error", type(e).__name__)
                await self._reject(websocket, violation.close_code, violation.public_message)
                return

            span.set_attribute("proxy.target_url", target.url)
            try:
                upstream = await self._open_upstream(websocket, target, sid)
            except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
                log_exception_with_details(
                    logger, f"[WS-Relay] Upstream {target.url} failed;", e, logging.WARNING
                )
                span.set_attribute("proxy.error", type(e).__name__)
                await self._reject(websocket, WS_CLOSE_INTERNAL_ERROR, "upstream unavailable")
                return
            except Exception as e:
                log_exception_with_details(
                    logger, f"[WS-Relay] Unexpected error opening {target.url};", e
                )
                span.set_attribute("proxy.error", type(e).__name__)
                await self._reject(websocket, WS_CLOSE_INTERNAL_ERROR, "upstream unavailable")
                return

            try:
                await websocket.accept(subprotocol=upstream.subprotocol)
                logger.info(mask_token(f"[WS-Relay] Relaying {target.url} for {sid}", sid))
                await self._pump(websocket, upstream)
            except Exception as e:
                log_exception_with_details(logger, "[WS-Relay] Relay failed;", e)
                await self._reject(websocket, WS_CLOSE_INTERNAL_ERROR, "relay error")
            finally:
                await upstream.close()
                await self._close_client(
                    websocket,
                    sendable_close_code(upstream.close_code),
                    upstream.close_reason or "",
                )

    async def _open_upstream(
        self, websocket: WebSocket, target: Target, sid: str
    ) -> ClientConnection:
        headers = []
        cookie = self.store.cookie_header(sid, target.host, target.http_url)
        if cookie:
            headers.append(("Cookie", cookie))
        subprotocols: List[str] = list(websocket.scope.get("subprotocols") or [])
        return await self._connect(
            target.url,
            origin=websocket.headers.get("origin"),
            additional_headers=headers,
            subprotocols=subprotocols or None,
            open_timeout=self.timeout,
            max_size=None,
        )

    async def _pump(self, websocket: WebSocket, upstream: ClientConnection) -> None:
        """Run both directions; when one ends the other is cancelled."""
        client_to_upstream = asyncio.create_task(self._client_to_upstream(websocket, upstream))
        upstream_to_client = asyncio.create_task(self._upstream_to_client(websocket, upstream))
        done, pending = await asyncio.wait(
            {client_to_upstream, upstream_to_client},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()

    async def _client_to_upstream(self, websocket: WebSocket, upstream: ClientConnection) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                code = sendable_close_code(message.get("code"))
                logger.debug(f"[WS-Relay] Client closed with {code}")
                await upstream.close(code=code)
                return
            try:
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
            except ConnectionClosed:
                return

    async def _upstream_to_client(self, websocket: WebSocket, upstream: ClientConnection) -> None:
        try:
            async for frame in upstream:
                if isinstance(frame, str):
                    await websocket.send_text(frame)
                else:
                    await websocket.send_bytes(frame)
        except ConnectionClosed:
            pass
        code = sendable_close_code(upstream.close_code)
        logger.debug(f"[WS-Relay] Upstream closed with {code}")
        await self._close_client(websocket, code, upstream.close_reason or "")
