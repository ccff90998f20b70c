import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from opentelemetry import trace

from webproxy.errors import AllAddressesBlocked

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

Resolver = Callable[[str], Awaitable[List[str]]]


@dataclass
class Classification:
    host: str
    addresses: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)

    @property
    def all_blocked(self) -> bool:
        return len(self.addresses) == len(self.blocked)

    @property
    def first_allowed(self) -> Optional[str]:
        """Advisory only: connections are still made by hostname."""
        return next((a for a in self.addresses if a not in self.blocked), None)


def _embedded_ipv4(ip: ipaddress.IPv6Address) -> Optional[ipaddress.IPv4Address]:
    if ip.ipv4_mapped:
        return ip.ipv4_mapped
    if ip.sixtofour:
        return ip.sixtofour
    if ip.teredo:
        return ip.teredo[1]
    return None


def is_blocked_address(raw: str) -> bool:
    """
    True when ``raw`` is not a globally routable unicast address.

    Anything that fails to parse is blocked.
    """
    try:
        ip = ipaddress.ip_address(raw.split("%", 1)[0])
    except ValueError:
        return True

    if isinstance(ip, ipaddress.IPv6Address):
        embedded = _embedded_ipv4(ip)
        if embedded is not None and is_blocked_address(str(embedded)):
            return True

    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_unspecified
        or ip.is_multicast
        or not ip.is_global
    )


async def system_resolver(host: str) -> List[str]:
    """Resolve A and AAAA records through the system resolver."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        logger.info(f"[Guard] Resolution failed for {host}: {e}")
        return []
    addresses: List[str] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        address = str(sockaddr[0])
        if address not in addresses:
            addresses.append(address)
    return addresses


class AddressGuard:
    """Decides whether a hostname may be contacted by the proxy."""

    def __init__(self, resolver: Optional[Resolver] = None):
        self._resolver = resolver or system_resolver

    async def resolve(self, host: str) -> List[str]:
        literal = host.strip("[]")
        try:
            ipaddress.ip_address(literal.split("%", 1)[0])
            return [literal]
        except ValueError:
            pass
        return await self._resolver(host)

    async def classify(self, host: str) -> Classification:
        with tracer.start_as_current_span("address_guard.classify") as span:
            span.set_attribute("guard.host", host)
            addresses = await self.resolve(host)
            result = Classification(
                host=host,
                addresses=addresses,
                blocked=[a for a in addresses if is_blocked_address(a)],
            )
            span.set_attribute("guard.address_count", len(addresses))
            span.set_attribute("guard.blocked_count", len(result.blocked))
            return result

    async def check(self, host: str) -> Classification:
        """Classify ``host`` and raise ``AllAddressesBlocked`` if it is unusable."""
        result = await self.classify(host)
        if not result.addresses or result.all_blocked:
            logger.warning(
                f"[Guard] Blocked {host}: resolved={result.addresses} "
                f"blocked={result.blocked}"
            )
            raise AllAddressesBlocked(host, result.addresses)
        logger.debug(f"[Guard] Allowed {host} via {result.first_allowed}")
        return result
