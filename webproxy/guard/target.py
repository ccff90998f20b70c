import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from webproxy.errors import BlockedScheme, InvalidURL, MissingTarget
from webproxy.guard.address_guard import AddressGuard

logger = logging.getLogger("uvicorn.error")

HTTP_SCHEMES = ("http", "https")
WEBSOCKET_SCHEMES = ("ws", "wss")
DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}

# Browsers drop these from URLs before parsing; so do we.
_STRIPPED_CHARS = re.compile(r"[\t\r\n\x00-\x1f]")
_REJECTED_PREFIXES = ("javascript:", "data:", "#")


@dataclass(frozen=True)
class Target:
    scheme: str
    host: str
    port: Optional[int]
    path: str
    query: str

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port is None or self.port == DEFAULT_PORTS.get(self.scheme):
            return host
        return f"{host}:{self.port}"

    @property
    def url(self) -> str:
        return urlunsplit((self.scheme, self.netloc, self.path or "/", self.query, ""))

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.netloc}"

    @property
    def http_url(self) -> str:
        """The URL with ws/wss mapped to http/https, for cookie matching."""
        scheme = {"ws": "http", "wss": "https"}.get(self.scheme, self.scheme)
        return urlunsplit((scheme, self.netloc, self.path or "/", self.query, ""))

    def __str__(self) -> str:
        return self.url


def parse_target(
    raw: Optional[str],
    base: Optional[str] = None,
    allowed_schemes=HTTP_SCHEMES,
) -> Target:
    """
    Sanitize and parse a user-supplied URL without touching the network.

    Protocol-relative input (``//host/path``) takes the scheme of ``base``,
    or ``https`` when there is no base.
    """
    if raw is None:
        raise MissingTarget()
    cleaned = _STRIPPED_CHARS.sub("", raw).strip()
    if not cleaned:
        raise MissingTarget()

    lowered = cleaned.lower()
    if lowered.startswith(_REJECTED_PREFIXES):
        raise BlockedScheme(f"rejected url prefix: {cleaned[:32]!r}")

    if cleaned.startswith("//"):
        base_scheme = urlsplit(base).scheme if base else ""
        cleaned = f"{base_scheme or 'https'}:{cleaned}"
    elif base:
        try:
            cleaned = urljoin(base, cleaned)
        except ValueError as e:
            raise InvalidURL(f"cannot resolve {cleaned!r} against {base!r}: {e}")

    try:
        parts = urlsplit(cleaned)
        port = parts.port
    except ValueError as e:
        raise InvalidURL(f"unparseable url {cleaned!r}: {e}")

    scheme = parts.scheme.lower()
    if not scheme:
        raise InvalidURL(f"not an absolute url: {cleaned!r}")
    if scheme not in allowed_schemes:
        raise BlockedScheme(f"scheme {scheme!r} not allowed")
    if not parts.netloc:
        raise InvalidURL(f"not an absolute url: {cleaned!r}")

    host = (parts.hostname or "").rstrip(".")
    if not host:
        raise InvalidURL(f"missing host: {cleaned!r}")
    if parts.username is not None or parts.password is not None:
        raise InvalidURL("credentials in url are not allowed")

    return Target(
        scheme=scheme,
        host=host,
        port=port,
        path=parts.path or "/",
        query=parts.query,
    )


class TargetValidator:
    """Parses a target and checks its host against the address guard."""

    def __init__(self, guard: AddressGuard):
        self.guard = guard

    async def validate(
        self,
        raw: Optional[str],
        base: Optional[str] = None,
        websocket: bool = False,
    ) -> Target:
        allowed = WEBSOCKET_SCHEMES if websocket else HTTP_SCHEMES
        target = parse_target(raw, base=base, allowed_schemes=allowed)
        await self.guard.check(target.host)
        return target
