"""
Error kinds raised by the guard, validator, forwarding engine and relay.

Every error carries the HTTP status and the short plain-text message that
may be shown to the client. The message of ``BlockedIP`` is identical to the
one of ``UpstreamUnreachable`` so a client cannot map the internal network
through error text; the exception itself (and its ``detail``) remains
distinguishable in server logs.
"""

from typing import Optional

GENERIC_FETCH_ERROR = "fetch error"

WS_CLOSE_POLICY_VIOLATION = 1008
WS_CLOSE_INTERNAL_ERROR = 1011


class ProxyError(Exception):
    status_code = 500
    public_message = "proxy error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.public_message
        super().__init__(self.detail)


class MissingTarget(ProxyError):
    status_code = 400
    public_message = "url required"


class InvalidURL(ProxyError):
    status_code = 400
    public_message = "invalid url"


class BlockedScheme(ProxyError):
    status_code = 400
    public_message = "scheme not allowed"


class BlockedIP(ProxyError):
    status_code = 502
    public_message = GENERIC_FETCH_ERROR

    def __init__(self, host: str, addresses=(), detail: Optional[str] = None):
        self.host = host
        self.addresses = list(addresses)
        super().__init__(
            detail or f"all addresses of {host!r} are blocked: {self.addresses}"
        )


class AllAddressesBlocked(BlockedIP):
    """Raised by the address guard when no resolved address is usable."""


class TooManyRedirects(ProxyError):
    status_code = 502
    public_message = "too many redirects"


class UpstreamTimeout(ProxyError):
    status_code = 504
    public_message = "upstream timed out"


class UpstreamUnreachable(ProxyError):
    status_code = 502
    public_message = GENERIC_FETCH_ERROR


class WebSocketPolicyViolation(ProxyError):
    status_code = 400
    public_message = "websocket target not allowed"
    close_code = WS_CLOSE_POLICY_VIOLATION
