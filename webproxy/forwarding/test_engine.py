import asyncio

import httpx
import pytest

from webproxy.errors import (
    BlockedIP,
    TooManyRedirects,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from webproxy.forwarding.engine import ForwardingEngine, redirect_method
from webproxy.guard.target import parse_target
from webproxy.session.store import new_sid


def redirect(location, status_code=302, headers=None):
    return status_code, [("location", location)] + list(headers or [])


@pytest.mark.parametrize(
    "method,status_code,expected",
    [
        ("POST", 301, "GET"),
        ("POST", 302, "GET"),
        ("POST", 303, "GET"),
        ("PUT", 303, "GET"),
        ("HEAD", 303, "HEAD"),
        ("POST", 307, "POST"),
        ("POST", 308, "POST"),
        ("PUT", 302, "PUT"),
        ("GET", 301, "GET"),
    ],
)
def test_redirect_method(method, status_code, expected):
    assert redirect_method(method, status_code) == expected


class TestPrepareHeaders:
    def test_strips_proxy_and_hop_headers(self, engine):
        target = parse_target("https://example.com/")
        prepared = engine.prepare_headers(
            [
                ("host", "proxy.local"),
                ("cookie", "proxy_sid=abc"),
                ("connection", "keep-alive"),
                ("x-forwarded-for", "203.0.113.9"),
                ("x-real-ip", "203.0.113.9"),
                ("x-proxy-key", "secret"),
                ("accept-encoding", "gzip, br"),
                ("content-length", "10"),
                ("user-agent", "Mozilla/5.0"),
                ("accept-language", "de"),
                ("referer", "http://proxy.local/proxy?url=https%3A%2F%2Fexample.com%2F"),
            ],
            target,
        )
        assert prepared == [
            ("user-agent", "Mozilla/5.0"),
            ("accept-language", "de"),
            ("referer", "http://proxy.local/proxy?url=https%3A%2F%2Fexample.com%2F"),
        ]

    def test_conceal_origin_rewrites_referer_and_origin(self, store, validator):
        engine = ForwardingEngine(store, validator, conceal_origin=True, prefix="")
        target = parse_target("https://example.com/form")
        prepared = engine.prepare_headers(
            [
                ("referer", "http://proxy.local/proxy?url=https%3A%2F%2Fexample.com%2Fpage"),
                ("origin", "http://proxy.local"),
            ],
            target,
        )
        assert prepared == [
            ("referer", "https://example.com/page"),
            ("origin", "https://example.com"),
        ]

    def test_conceal_origin_drops_foreign_referer(self, store, validator):
        engine = ForwardingEngine(store, validator, conceal_origin=True, prefix="")
        target = parse_target("https://example.com/")
        prepared = engine.prepare_headers([("referer", "http://proxy.local/")], target)
        assert prepared == []


class TestForward:
    @pytest.mark.asyncio
    async def test_plain_fetch(self, engine, upstream):
        upstream.add("https://example.com/", 200, [("content-type", "text/plain")], b"hello")
        result = await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())
        assert result.status_code == 200
        assert result.redirects == []
        assert await engine.read_body(result) == b"hello"

    @pytest.mark.asyncio
    async def test_redirect_chain_up_to_limit_is_followed(self, engine, upstream):
        for i in range(5):
            upstream.add(f"https://a.example/{i}", *redirect(f"/{i + 1}"))
        upstream.add("https://a.example/5", 200, content=b"done")
        result = await engine.forward("GET", parse_target("https://a.example/0"), [], None, new_sid())
        assert result.status_code == 200
        assert result.target.url == "https://a.example/5"
        assert len(result.redirects) == 5
        assert len(upstream.requests) == 6

    @pytest.mark.asyncio
    async def test_too_many_redirects(self, engine, upstream):
        for i in range(7):
            upstream.add(f"https://a.example/{i}", *redirect(f"https://a.example/{i + 1}"))
        with pytest.raises(TooManyRedirects):
            await engine.forward("GET", parse_target("https://a.example/0"), [], None, new_sid())
        # the sixth redirect is refused before its location is requested
        assert upstream.urls == [f"https://a.example/{i}" for i in range(6)]

    @pytest.mark.asyncio
    async def test_redirect_to_metadata_address_is_blocked_before_contact(self, engine, upstream):
        upstream.add("https://example.com/", *redirect("http://169.254.169.254/latest/meta-data/"))
        with pytest.raises(BlockedIP):
            await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())
        assert upstream.urls == ["https://example.com/"]

    @pytest.mark.asyncio
    async def test_redirect_to_private_hostname_is_blocked(self, engine, upstream):
        upstream.add("https://example.com/", *redirect("http://internal.example/admin"))
        with pytest.raises(BlockedIP):
            await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_redirect_without_location_is_returned(self, engine, upstream):
        upstream.add("https://example.com/", 302, [], b"")
        result = await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())
        assert result.status_code == 302

    @pytest.mark.asyncio
    async def test_cookies_follow_their_host_only(self, engine, upstream):
        sid = new_sid()
        upstream.add(
            "https://a.example/login",
            *redirect("https://b.example/landing", headers=[("set-cookie", "auth=1; Path=/")]),
        )
        upstream.add("https://b.example/landing", 200)
        upstream.add("https://a.example/home", 200)

        await engine.forward("GET", parse_target("https://a.example/login"), [], None, sid)
        assert "cookie" not in upstream.requests[1].headers

        await engine.forward("GET", parse_target("https://a.example/home"), [], None, sid)
        assert upstream.requests[2].headers["cookie"] == "auth=1"

        await engine.forward("GET", parse_target("https://a.example/home"), [], None, new_sid())
        assert "cookie" not in upstream.requests[3].headers

    @pytest.mark.asyncio
    async def test_cookie_set_on_redirect_is_sent_on_next_hop(self, engine, upstream):
        upstream.add(
            "https://a.example/login",
            *redirect("/home", headers=[("set-cookie", "auth=1; Path=/")]),
        )
        upstream.add("https://a.example/home", 200)
        await engine.forward("GET", parse_target("https://a.example/login"), [], None, new_sid())
        assert upstream.requests[1].headers["cookie"] == "auth=1"

    @pytest.mark.asyncio
    async def test_client_cookie_header_is_never_forwarded(self, engine, upstream):
        upstream.add("https://example.com/", 200)
        await engine.forward(
            "GET",
            parse_target("https://example.com/"),
            [("cookie", "proxy_sid=0123")],
            None,
            new_sid(),
        )
        assert "cookie" not in upstream.requests[0].headers

    @pytest.mark.asyncio
    async def test_post_becomes_get_on_302(self, engine, upstream):
        upstream.add("https://example.com/submit", *redirect("/done"))
        upstream.add("https://example.com/done", 200)
        await engine.forward(
            "POST",
            parse_target("https://example.com/submit"),
            [("content-type", "application/x-www-form-urlencoded")],
            b"a=1",
            new_sid(),
        )
        follow_up = upstream.requests[1]
        assert upstream.requests[0].content == b"a=1"
        assert follow_up.method == "GET"
        assert follow_up.content == b""
        assert "content-type" not in follow_up.headers

    @pytest.mark.asyncio
    async def test_post_is_preserved_on_307(self, engine, upstream):
        upstream.add("https://example.com/submit", *redirect("/again", status_code=307))
        upstream.add("https://example.com/again", 200)
        await engine.forward(
            "POST", parse_target("https://example.com/submit"), [], b"a=1", new_sid()
        )
        assert upstream.requests[1].method == "POST"
        assert upstream.requests[1].content == b"a=1"

    @pytest.mark.asyncio
    async def test_authorization_dropped_on_cross_origin_redirect(self, engine, upstream):
        upstream.add("https://a.example/", *redirect("https://b.example/"))
        upstream.add("https://b.example/", 200)
        await engine.forward(
            "GET",
            parse_target("https://a.example/"),
            [("authorization", "Bearer t")],
            None,
            new_sid(),
        )
        assert upstream.requests[0].headers["authorization"] == "Bearer t"
        assert "authorization" not in upstream.requests[1].headers

    @pytest.mark.asyncio
    async def test_followed_hops_are_recorded(self, engine, upstream):
        upstream.add("https://example.com/", *redirect("https://example.com/next", status_code=301))
        upstream.add("https://example.com/next", 200)
        result = await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())
        assert [t.url for t in result.redirects] == ["https://example.com/next"]

    @pytest.mark.asyncio
    async def test_slow_upstream_times_out(self, store, validator):
        async def slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200)

        engine = ForwardingEngine(
            store, validator, timeout=0.05, transport=httpx.MockTransport(slow)
        )
        with pytest.raises(UpstreamTimeout):
            await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())

    @pytest.mark.asyncio
    async def test_transport_timeout_maps_to_upstream_timeout(self, store, validator):
        def timeout(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        engine = ForwardingEngine(store, validator, transport=httpx.MockTransport(timeout))
        with pytest.raises(UpstreamTimeout):
            await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())

    @pytest.mark.asyncio
    async def test_connection_failure_is_unreachable(self, store, validator):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        engine = ForwardingEngine(store, validator, transport=httpx.MockTransport(refuse))
        with pytest.raises(UpstreamUnreachable) as exc:
            await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())
        assert exc.value.public_message == "fetch error"

    @pytest.mark.asyncio
    async def test_read_body_after_deadline_times_out(self, engine, upstream):
        upstream.add("https://example.com/", 200, content=b"late")
        result = await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())
        result.deadline = asyncio.get_running_loop().time() - 1
        with pytest.raises(UpstreamTimeout):
            await engine.read_body(result)

    @pytest.mark.asyncio
    async def test_client_never_stores_cookies_itself(self, engine, upstream):
        upstream.add("https://example.com/", 200, [("set-cookie", "a=1")])
        await engine.forward("GET", parse_target("https://example.com/"), [], None, new_sid())
        assert len(engine.client.cookies.jar) == 0
        await engine.aclose()
