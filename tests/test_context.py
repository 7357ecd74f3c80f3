"""Tests for perch.context: the per-call handler context."""

import pytest

from perch.context import Context, get_context
from perch.errors import HTTPError
from perch.http.headers import Headers
from perch.testing import MockRequestEvent
from perch.transport import Addr


def _context(url: str = "http://localhost/books/1?sort=asc", **options) -> Context:
    deserializer = options.pop("deserializer", None)
    secure = options.pop("secure", False)
    event = MockRequestEvent(url, **options)
    return Context(event, Headers(), {"id": "1"}, deserializer=deserializer, secure=secure)


class TestPassthrough:
    def test_request_properties(self) -> None:
        ctx = _context(headers={"cookie": "sid=abc"})
        assert ctx.request.path == "/books/1"
        assert ctx.url == "http://localhost/books/1?sort=asc"
        assert ctx.query["sort"] == "asc"
        assert ctx.cookies == {"sid": "abc"}
        assert ctx.params == {"id": "1"}

    def test_event_properties(self) -> None:
        ctx = _context(addr=Addr("10.0.0.1", 443), env={"tenant": "a"})
        assert ctx.addr == Addr("10.0.0.1", 443)
        assert ctx.env == {"tenant": "a"}
        assert len(ctx.id) == 32

    def test_default_params(self) -> None:
        event = MockRequestEvent("http://localhost/")
        assert Context(event, Headers()).params == {}

    def test_repr(self) -> None:
        assert "/books/1" in repr(_context())


class TestCookies:
    def test_set_cookie(self) -> None:
        ctx = _context()
        ctx.set_cookie("theme", "dark mode", max_age=60)
        assert ctx.response_headers.get_list("set-cookie") == [
            "theme=dark%20mode; Max-Age=60; Path=/; HttpOnly; SameSite=Lax"
        ]

    def test_secure_follows_context(self) -> None:
        ctx = _context(secure=True)
        ctx.set_cookie("sid", "abc")
        assert "; Secure" in ctx.response_headers["set-cookie"]

    def test_secure_can_be_overridden(self) -> None:
        ctx = _context(secure=True)
        ctx.set_cookie("sid", "abc", secure=False)
        assert "Secure" not in ctx.response_headers["set-cookie"]

    def test_delete_cookie(self) -> None:
        ctx = _context()
        ctx.delete_cookie("sid")
        assert "sid=; Max-Age=0" in ctx.response_headers["set-cookie"]

    def test_cookies_accumulate(self) -> None:
        ctx = _context()
        ctx.set_cookie("a", "1")
        ctx.set_cookie("b", "2")
        assert len(ctx.response_headers.get_list("set-cookie")) == 2


class TestBody:
    async def test_json_body(self) -> None:
        ctx = _context(method="POST", body='{"title": "It"}')
        assert await ctx.body() == {"title": "It"}

    async def test_body_is_cached(self) -> None:
        ctx = _context(method="POST", body='{"title": "It"}')
        first = await ctx.body()
        assert await ctx.body() is first

    async def test_empty_body(self) -> None:
        ctx = _context(method="POST")
        assert await ctx.body() is None

    async def test_invalid_json_is_none(self) -> None:
        ctx = _context(method="POST", body="{not json")
        assert await ctx.body() is None

    async def test_invalid_utf8_is_none(self) -> None:
        ctx = _context(method="POST", body=b"\xff\xfe")
        assert await ctx.body() is None

    async def test_consumed_body_is_none(self) -> None:
        ctx = _context(method="POST", body='{"a": 1}')
        assert await ctx.text() == '{"a": 1}'
        assert await ctx.body() is None

    async def test_deserializer(self) -> None:
        class Form:
            def parse(self, text, params, request):
                pairs = (item.split("=") for item in text.split("&"))
                return {key: value for key, value in pairs} | {"id": params["id"]}

        ctx = _context(method="POST", body="title=It&year=1986", deserializer=Form())
        assert await ctx.body() == {"title": "It", "year": "1986", "id": "1"}

    async def test_async_deserializer(self) -> None:
        class Upper:
            async def parse(self, text, params, request):
                return text.upper()

        ctx = _context(method="POST", body="hello", deserializer=Upper())
        assert await ctx.body() == "HELLO"

    async def test_failing_deserializer_is_none(self) -> None:
        class Strict:
            def parse(self, text, params, request):
                raise ValueError("rejected")

        ctx = _context(method="POST", body="x", deserializer=Strict())
        assert await ctx.body() is None

    async def test_json_helper(self) -> None:
        ctx = _context(method="POST", body="[1, 2]")
        assert await ctx.json() == [1, 2]


class TestUpgrade:
    def test_unsupported(self) -> None:
        with pytest.raises(HTTPError) as exc_info:
            _context().upgrade()
        assert exc_info.value.status == 501

    def test_supported(self) -> None:
        class UpgradableEvent(MockRequestEvent):
            def upgrade(self, **options):
                return ("upgraded", options)

        ctx = Context(UpgradableEvent("http://localhost/ws"), Headers())
        assert ctx.upgrade(protocol="chat") == ("upgraded", {"protocol": "chat"})


class TestGetContext:
    def test_outside_handler(self) -> None:
        with pytest.raises(LookupError):
            get_context()
