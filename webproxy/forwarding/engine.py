import asyncio
import logging
from dataclasses import dataclass, field
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Iterable, List, Optional, Tuple

import httpx
from opentelemetry import trace

from webproxy.errors import (
    BlockedIP,
    ProxyError,
    TooManyRedirects,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from webproxy.guard.target import Target, TargetValidator
from webproxy.rewrite.headers import HOP_BY_HOP_HEADERS
from webproxy.rewrite.links import unwrap_proxy_url
from webproxy.session.store import SessionStore, jar_cookie_header, merge_set_cookie
from webproxy.utils import mask_token
from webproxy.vars import (
    CONCEAL_ORIGIN,
    MAX_REDIRECTS,
    PROXY_BASE_PATH,
    PROXY_KEY_HEADER,
    PROXY_TIMEOUT,
)

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

REDIRECT_STATUSES = {301, 302, 303, 307, 308}

# Never forwarded upstream: hop-specific, proxy-internal or client-identifying.
STRIPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {
    "host",
    "content-length",
    "cookie",
    "accept-encoding",
    "forwarded",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-forwarded-prefix",
    "x-real-ip",
    PROXY_KEY_HEADER.lower(),
}

BODY_HEADERS = {"content-type", "content-encoding", "content-language", "content-md5"}


def _rejecting_cookie_jar() -> CookieJar:
    # The shared client must never keep cookies; all cookie state lives in
    # the session store, keyed by session and host.
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=()))


def redirect_method(method: str, status_code: int) -> str:
    """Method for the next hop, following browser redirect semantics."""
    if status_code == 303 and method != "HEAD":
        return "GET"
    if status_code in (301, 302) and method == "POST":
        return "GET"
    return method


@dataclass
class UpstreamResponse:
    """Terminal upstream response; headers are read, the body is not."""

    target: Target
    response: httpx.Response
    redirects: List[Target] = field(default_factory=list)
    deadline: Optional[float] = None

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self.response.headers

    async def aclose(self) -> None:
        await self.response.aclose()


class ForwardingEngine:
    """Executes one logical proxied request, following redirects itself."""

    def __init__(
        self,
        store: SessionStore,
        validator: TargetValidator,
        timeout: float = PROXY_TIMEOUT,
        max_redirects: int = MAX_REDIRECTS,
        conceal_origin: bool = CONCEAL_ORIGIN,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        prefix: str = PROXY_BASE_PATH,
    ):
        self.store = store
        self.validator = validator
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.conceal_origin = conceal_origin
        self.prefix = prefix
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                follow_redirects=False,
                timeout=httpx.Timeout(self.timeout),
                cookies=_rejecting_cookie_jar(),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def prepare_headers(
        self, headers: Iterable[Tuple[str, str]], target: Target
    ) -> List[Tuple[str, str]]:
        """
        Copy client headers for the upstream request.

        With origin concealment on, ``Referer`` is translated back from a proxy
        URL to the page it stands for (or dropped) and ``Origin`` becomes the
        target's own origin.
        """
        prepared: List[Tuple[str, str]] = []
        for name, value in headers:
            name_lower = name.lower()
            if name_lower in STRIPPED_REQUEST_HEADERS:
                continue
            if self.conceal_origin and name_lower == "referer":
                unwrapped = unwrap_proxy_url(value, self.prefix)
                if unwrapped:
                    prepared.append((name, unwrapped))
                continue
            if self.conceal_origin and name_lower == "origin":
                prepared.append((name, target.origin))
                continue
            prepared.append((name, value))
        return prepared

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self.client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"timeout contacting {request.url.host}: {e}")
        except httpx.HTTPError as e:
            raise UpstreamUnreachable(
                f"cannot reach {request.url.host}: {type(e).__name__}: {e}"
            )

    async def forward(
        self,
        method: str,
        target: Target,
        headers: Iterable[Tuple[str, str]],
        body: Optional[bytes],
        sid: str,
    ) -> UpstreamResponse:
        """
        Fetch ``target`` on behalf of session ``sid``.

        Every redirect hop is re-validated before it is contacted. The whole
        chain runs under one timeout; on expiry the in-flight request is
        cancelled and ``UpstreamTimeout`` is raised.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        with tracer.start_as_current_span("forward_request") as span:
            span.set_attribute("proxy.target_url", target.url)
            span.set_attribute("proxy.method", method)
            try:
                upstream = await asyncio.wait_for(
                    self._follow(method, target, list(headers), body, sid),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                span.set_attribute("proxy.error", "timeout")
                logger.warning(f"[Forward] Timeout after {self.timeout}s for {target.url}")
                raise UpstreamTimeout(f"{target.url} exceeded {self.timeout}s")
            except ProxyError as e:
                span.set_attribute("proxy.error", type(e).__name__)
                raise
            upstream.deadline = deadline
            span.set_attribute("proxy.status_code", upstream.status_code)
            span.set_attribute("proxy.redirects", len(upstream.redirects))
            return upstream

    async def _follow(
        self,
        method: str,
        target: Target,
        headers: List[Tuple[str, str]],
        body: Optional[bytes],
        sid: str,
    ) -> UpstreamResponse:
        chain: List[Target] = [target]
        response: Optional[httpx.Response] = None
        try:
            while True:
                request_headers = self.prepare_headers(headers, target)
                async with self.store.hold(sid, target.host) as jar:
                    cookie = jar_cookie_header(jar, target.url)
                    if cookie:
                        request_headers.append(("cookie", cookie))
                    request = self.client.build_request(
                        method, target.url, headers=request_headers, content=body or None
                    )
                    logger.debug(
                        mask_token(f"[Forward] {method} {target.url} (session {sid})", sid)
                    )
                    response = await self._send(request)
                    merge_set_cookie(
                        jar, target.url, response.headers.get_list("set-cookie")
                    )

                location = response.headers.get("location")
                if response.status_code not in REDIRECT_STATUSES or not location:
                    upstream = UpstreamResponse(target, response, chain[1:])
                    response = None
                    return upstream

                status_code = response.status_code
                await response.aclose()
                response = None
                if len(chain) > self.max_redirects:
                    raise TooManyRedirects(
                        f"more than {self.max_redirects} redirects starting at {chain[0].url}"
                    )

                try:
                    next_target = await self.validator.validate(location, base=target.url)
                except BlockedIP:
                    logger.warning(
                        f"[Forward] Redirect from {target.url} to blocked location {location!r}"
                    )
                    raise

                next_method = redirect_method(method, status_code)
                if next_method != method:
                    body = None
                    headers = [(k, v) for k, v in headers if k.lower() not in BODY_HEADERS]
                if next_target.origin != target.origin:
                    headers = [(k, v) for k, v in headers if k.lower() != "authorization"]
                logger.debug(
                    f"[Forward] {status_code} {target.url} -> {next_method} {next_target.url}"
                )
                method = next_method
                target = next_target
                chain.append(target)
        finally:
            if response is not None:
                await response.aclose()

    async def read_body(self, upstream: UpstreamResponse) -> bytes:
        """Read (and decode) the terminal body within the remaining time budget."""
        loop = asyncio.get_running_loop()
        remaining = self.timeout
        if upstream.deadline is not None:
            remaining = upstream.deadline - loop.time()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError()
            return await asyncio.wait_for(upstream.response.aread(), timeout=remaining)
        except asyncio.TimeoutError:
            await upstream.aclose()
            raise UpstreamTimeout(f"body of {upstream.target.url} not read in time")
        except httpx.HTTPError as e:
            await upstream.aclose()
            raise UpstreamUnreachable(
                f"body of {upstream.target.url} failed: {type(e).__name__}: {e}"
            )
