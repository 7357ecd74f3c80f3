"""Immutable HTTP request.

Frozen metadata with async body access. The request is honest about
what it is: received data that doesn't change.
"""

from __future__ import annotations

import json as json_module
from collections.abc import AsyncGenerator, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from perch._internal.asgi import Receive
from perch.http.cookies import parse_cookies
from perch.http.headers import Headers
from perch.http.query import QueryParams


def _buffered(body: bytes) -> Receive:
    """A receive callable that yields *body* once, then disconnects."""
    sent = False

    async def receive() -> dict[str, Any]:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return {"type": "http.disconnect"}

    return receive


@dataclass(frozen=True, slots=True)
class Request:
    """An immutable HTTP request.

    Metadata (method, path, headers, etc.) is frozen at creation.
    Body is accessed asynchronously via ``.body()``, ``.json()``, ``.text()``.
    """

    method: str
    path: str
    headers: Headers
    query: QueryParams
    scheme: str
    host: str
    http_version: str
    server: tuple[str, int] | None
    client: tuple[str, int] | None
    cookies: Mapping[str, str]

    # Private: ASGI-style receive callable for body streaming
    _receive: Receive = field(repr=False, compare=False)

    # Private: mutable cache for the body
    # (dict contents are mutable even though the field reference is frozen)
    _cache: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    # -- Computed properties --

    @property
    def url(self) -> str:
        """Absolute request URL (scheme, host, path and query)."""
        query = str(self.query)
        base = f"{self.scheme}://{self.host}{self.path}"
        return f"{base}?{query}" if query else base

    @property
    def content_type(self) -> str | None:
        """The Content-Type header value."""
        return self.headers.get("content-type")

    @property
    def accept(self) -> str:
        """The Accept header value (``""`` when absent)."""
        return self.headers.get("accept") or ""

    @property
    def body_used(self) -> bool:
        """True once the body has been read."""
        return "_body" in self._cache

    # -- Async body access --

    async def body(self) -> bytes:
        """Read the full request body.

        Result is cached: the receive callable is consumed once, then
        the same bytes are returned on subsequent calls.
        """
        if "_body" in self._cache:
            return self._cache["_body"]
        chunks = [chunk async for chunk in self.stream()]
        result = b"".join(chunks)
        self._cache["_body"] = result
        return result

    async def stream(self) -> AsyncGenerator[bytes]:
        """Stream the request body in chunks."""
        while True:
            message = await self._receive()
            if message.get("type") == "http.disconnect":
                break
            body = message.get("body", b"")
            if body:
                yield body
            if not message.get("more_body", False):
                break

    async def text(self) -> str:
        """Read the body as text (UTF-8)."""
        raw = await self.body()
        return raw.decode("utf-8")

    async def json(self) -> Any:
        """Parse the body as JSON."""
        raw = await self.body()
        return json_module.loads(raw)

    # -- Factories --

    @classmethod
    def from_asgi(cls, scope: Mapping[str, Any], receive: Receive) -> Request:
        """Create a Request from an ASGI HTTP scope and receive callable.

        The path is taken from ``raw_path`` when the server provides it, so
        it stays percent-encoded like a URL pathname; route matching does
        the decoding.
        """
        headers = Headers.from_raw(scope.get("headers", ()))
        raw_path = scope.get("raw_path")
        path = raw_path.decode("latin-1").partition("?")[0] if raw_path else scope["path"]
        server = scope.get("server")
        client = scope.get("client")
        host = headers.get("host")
        if host is None:
            host = f"{server[0]}:{server[1]}" if server else "localhost"
        return cls(
            method=scope["method"].upper(),
            path=path,
            headers=headers,
            query=QueryParams(scope.get("query_string", b"")),
            scheme=scope.get("scheme", "http"),
            host=host,
            http_version=scope.get("http_version", "1.1"),
            server=tuple(server) if server else None,
            client=tuple(client) if client else None,
            cookies=parse_cookies(headers.get("cookie", "")),
            _receive=receive,
        )

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | Headers | None = None,
        body: bytes | str = b"",
        client: tuple[str, int] | None = ("127.0.0.1", 0),
    ) -> Request:
        """Create a Request from an absolute or path-only URL.

        Used by in-memory transports and ``Router.handle()``.
        """
        parts = urlsplit(url)
        bag = Headers(headers)
        host = parts.netloc or bag.get("host") or "localhost"
        if "host" not in bag:
            bag["host"] = host
        if isinstance(body, str):
            body = body.encode("utf-8")
        return cls(
            method=method.upper(),
            path=parts.path or "/",
            headers=bag,
            query=QueryParams(parts.query),
            scheme=parts.scheme or "http",
            host=host,
            http_version="1.1",
            server=None,
            client=client,
            cookies=parse_cookies(bag.get("cookie", "")),
            _receive=_buffered(body),
        )
