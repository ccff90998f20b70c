import asyncio
import logging
import re
import secrets
import threading
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Tuple

import httpx

from webproxy.utils import mask_token
from webproxy.vars import JAR_CAPACITY, JAR_TTL_SECONDS, SESSION_COOKIE_NAME

logger = logging.getLogger("uvicorn.error")

SID_PATTERN = re.compile(r"^[0-9a-f]{32}$")

JarKey = Tuple[str, str]


def new_sid() -> str:
    return secrets.token_hex(16)


@dataclass
class _JarEntry:
    jar: httpx.Cookies
    touched: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # tasks inside or waiting on ``hold``; such entries are never evicted
    holders: int = 0

    @property
    def in_use(self) -> bool:
        return self.holders > 0 or self.lock.locked()


def jar_cookie_header(jar: httpx.Cookies, url: str) -> Optional[str]:
    """Build the ``Cookie`` header value ``jar`` holds for ``url``."""
    request = httpx.Request("GET", url)
    jar.set_cookie_header(request)
    return request.headers.get("cookie")


def merge_set_cookie(
    jar: httpx.Cookies, target_url: str, set_cookie_headers: Iterable[str]
) -> Tuple[int, int]:
    """
    Merge ``Set-Cookie`` values received from ``target_url`` into ``jar``.

    Cookies are checked against the responding URL's own host and path, so a
    ``Domain`` attribute that does not match the responding host is dropped.
    Returns ``(offered, stored_delta)``.
    """
    headers = [("set-cookie", value) for value in set_cookie_headers if value]
    if not headers:
        return 0, 0
    response = httpx.Response(
        200, headers=headers, request=httpx.Request("GET", target_url)
    )
    before = len(jar.jar)
    jar.extract_cookies(response)
    return len(headers), len(jar.jar) - before


class SessionStore:
    """
    Owns every cookie jar the proxy holds, one per (session, target host).

    Jars idle for longer than ``ttl`` seconds are purged and inserting past
    ``capacity`` evicts the least recently used jar. Structural changes are
    guarded by a thread lock; the read-send-merge cycle of a single jar is
    serialized by that jar's own asyncio lock (see ``hold``). A jar that is
    held or awaited is skipped by both purge and eviction, so the store may
    briefly exceed ``capacity`` while every older jar is in use.
    """

    def __init__(
        self,
        capacity: int = JAR_CAPACITY,
        ttl: float = JAR_TTL_SECONDS,
        cookie_name: str = SESSION_COOKIE_NAME,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity
        self.ttl = ttl
        self.cookie_name = cookie_name
        self._clock = clock
        self._entries: "OrderedDict[JarKey, _JarEntry]" = OrderedDict()
        self._mutex = threading.RLock()

    def __len__(self) -> int:
        with self._mutex:
            return len(self._entries)

    def sid_for(self, request_cookies: Mapping[str, str]) -> Tuple[str, bool]:
        """
        Return ``(sid, is_new)``. A new sid must be set on the response by the
        caller as an HttpOnly cookie.
        """
        existing = request_cookies.get(self.cookie_name) if request_cookies else None
        if existing and SID_PATTERN.match(existing):
            return existing, False
        sid = new_sid()
        logger.debug(mask_token(f"[Session] Minted session {sid}", sid))
        return sid, True

    def _entry(self, sid: str, host: str) -> _JarEntry:
        key = (sid, host.lower())
        with self._mutex:
            now = self._clock()
            self._purge_expired(now)
            entry = self._entries.get(key)
            if entry is None:
                entry = _JarEntry(jar=httpx.Cookies(), touched=now)
                self._entries[key] = entry
                self._evict_over_capacity(keep=key)
            else:
                entry.touched = now
                self._entries.move_to_end(key)
            return entry

    def _evict_over_capacity(self, keep: JarKey) -> None:
        for key in list(self._entries):
            if len(self._entries) <= self.capacity:
                return
            if key == keep or self._entries[key].in_use:
                continue
            del self._entries[key]
            logger.debug(mask_token(f"[Session] Evicted jar {key}", key[0]))
        if len(self._entries) > self.capacity:
            logger.debug(
                f"[Session] {len(self._entries)} jars over capacity {self.capacity}; "
                "older jars are in use"
            )

    def _purge_expired(self, now: float) -> None:
        # entries are ordered by last touch, so expired ones sit at the front
        for key, entry in list(self._entries.items()):
            if now - entry.touched < self.ttl:
                break
            if not entry.in_use:
                del self._entries[key]

    def sweep(self) -> int:
        """Drop expired jars; returns the number of jars left."""
        with self._mutex:
            self._purge_expired(self._clock())
            return len(self._entries)

    def jar_for(self, sid: str, host: str) -> httpx.Cookies:
        return self._entry(sid, host).jar

    def contains(self, sid: str, host: str) -> bool:
        with self._mutex:
            return (sid, host.lower()) in self._entries

    @asynccontextmanager
    async def hold(self, sid: str, host: str):
        """
        Serialize a read-send-merge cycle on one jar and yield the jar.

        Callers must read from and merge into the yielded jar; the entry stays
        in the store until the last holder leaves.
        """
        with self._mutex:
            entry = self._entry(sid, host)
            entry.holders += 1
        try:
            async with entry.lock:
                yield entry.jar
        finally:
            with self._mutex:
                entry.holders -= 1
                entry.touched = self._clock()

    def cookie_header(self, sid: str, host: str, url: str) -> Optional[str]:
        """Build the ``Cookie`` header value the jar holds for ``url``."""
        return jar_cookie_header(self.jar_for(sid, host), url)

    def record_set_cookie(
        self,
        sid: str,
        host: str,
        target_url: str,
        set_cookie_headers: Iterable[str],
    ) -> int:
        """
        Merge ``Set-Cookie`` values from ``target_url`` into the (sid, host) jar.

        Returns the number of cookies the jar holds afterwards.
        """
        jar = self.jar_for(sid, host)
        offered, stored = merge_set_cookie(jar, target_url, set_cookie_headers)
        if stored < offered:
            logger.debug(
                f"[Session] {offered - max(stored, 0)} cookie(s) from "
                f"{host} not stored (rejected, replaced or expired)"
            )
        return len(jar.jar)
