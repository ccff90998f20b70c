import logging
import secrets
from typing import List, Mapping, Optional
from urllib.parse import urlsplit

from fastapi import HTTPException, Request

from webproxy.vars import (
    ALLOWED_ORIGINS,
    PROXY_KEY,
    PROXY_KEY_COOKIE_NAME,
    PROXY_KEY_HEADER,
)

logger = logging.getLogger("uvicorn.error")

KEY_QUERY_PARAM = "key"


def request_origin(headers: Mapping[str, str]) -> Optional[str]:
    """The ``Origin`` header, or the origin of ``Referer`` when it is absent."""
    origin = headers.get("origin")
    if origin and origin != "null":
        return origin.rstrip("/")
    referer = headers.get("referer")
    if referer:
        parts = urlsplit(referer)
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
    return None


def presented_key(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    query: Mapping[str, str],
) -> Optional[str]:
    return (
        headers.get(PROXY_KEY_HEADER)
        or cookies.get(PROXY_KEY_COOKIE_NAME)
        or query.get(KEY_QUERY_PARAM)
    )


def access_denial(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    query: Mapping[str, str],
    key: Optional[str] = None,
    allowed_origins: Optional[List[str]] = None,
) -> Optional[str]:
    """Return why the request is refused, or None when it may proceed."""
    key = PROXY_KEY if key is None else key
    allowed_origins = ALLOWED_ORIGINS if allowed_origins is None else allowed_origins
    if key:
        presented = presented_key(headers, cookies, query)
        if not presented or not secrets.compare_digest(
            presented.encode("utf-8"), key.encode("utf-8")
        ):
            return "missing or invalid proxy key"
    if allowed_origins:
        origin = request_origin(headers)
        if origin not in allowed_origins:
            return f"origin {origin!r} not allowed"
    return None


async def require_access(request: Request) -> bool:
    """
    FastAPI dependency enforcing the optional shared secret and origin list.

    Returns True when the key arrived as a query parameter, so the caller can
    persist it in a cookie for follow-up navigation.
    """
    reason = access_denial(request.headers, request.cookies, request.query_params)
    if reason:
        logger.warning(f"[Access] Denied {request.method} {request.url.path}: {reason}")
        raise HTTPException(status_code=403, detail="Forbidden")
    return bool(
        PROXY_KEY
        and request.query_params.get(KEY_QUERY_PARAM)
        and not request.headers.get(PROXY_KEY_HEADER)
    )
