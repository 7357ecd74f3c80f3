"""HTTP response with chainable .with_*() transformation API.

Each transformation returns a new Response. Immutable by convention,
built incrementally by design: the router, status handlers and hooks can
pass a response around without worrying about who else holds it.
"""

from __future__ import annotations

import json as json_module
from collections.abc import AsyncIterator, Iterable, Iterator, Mapping
from dataclasses import dataclass, replace
from typing import Any

from perch.http.cookies import SetCookie
from perch.http.headers import Headers
from perch.http.status import status_text

type HeaderPairs = Mapping[str, str] | Headers | Iterable[tuple[str, str]]


def _pairs(headers: HeaderPairs) -> list[tuple[str, str]]:
    if isinstance(headers, Headers):
        return headers.multi_items()
    if isinstance(headers, Mapping):
        return list(headers.items())
    return list(headers)


class _HeaderOps:
    """Header plumbing shared by Response and StreamingResponse.

    Content type is kept in its own field; a ``content-type`` entry in a
    merged header bag only fills it when the response has none.
    """

    __slots__ = ()

    def with_status(self, status: int) -> Any:
        """Return a copy with a different status code."""
        return replace(self, status=status)  # type: ignore[type-var]

    def with_header(self, name: str, value: str) -> Any:
        """Return a copy with an additional header."""
        if name.lower() == "content-type":
            return replace(self, content_type=value)  # type: ignore[type-var]
        return replace(self, headers=(*self.headers, (name, value)))  # type: ignore[attr-defined,type-var]

    def with_headers(self, headers: HeaderPairs) -> Any:
        """Return a copy with additional headers (duplicates allowed)."""
        result = self
        for name, value in _pairs(headers):
            result = result.with_header(name, value)
        return result

    def merge_headers(self, headers: HeaderPairs) -> Any:
        """Return a copy with every header pair from *headers* not already present.

        Used to carry the per-request header bag (cookies, correlation ids)
        onto a response a handler built itself.
        """
        existing = {(n.lower(), v) for n, v in self.headers}  # type: ignore[attr-defined]
        added: list[tuple[str, str]] = []
        content_type = self.content_type  # type: ignore[attr-defined]
        for name, value in _pairs(headers):
            if name.lower() == "content-type":
                if content_type is None:
                    content_type = value
                continue
            if (name.lower(), value) in existing:
                continue
            existing.add((name.lower(), value))
            added.append((name, value))
        return replace(  # type: ignore[type-var]
            self,
            headers=(*self.headers, *added),  # type: ignore[attr-defined]
            content_type=content_type,
        )

    def without_header(self, name: str) -> Any:
        """Return a copy with every value for *name* removed."""
        key = name.lower()
        if key == "content-type":
            return replace(self, content_type=None)  # type: ignore[type-var]
        kept = tuple((n, v) for n, v in self.headers if n.lower() != key)  # type: ignore[attr-defined]
        return replace(self, headers=kept)  # type: ignore[type-var]

    def with_content_type(self, content_type: str | None) -> Any:
        """Return a copy with a different content type."""
        return replace(self, content_type=content_type)  # type: ignore[type-var]

    # -- Header access --

    def header(self, name: str, default: str | None = None) -> str | None:
        """First value for *name* (case-insensitive), content type included."""
        values = self.header_list(name)
        return values[0] if values else default

    def header_list(self, name: str) -> list[str]:
        """All values for *name*, content type and cookies included."""
        return self.all_headers.get_list(name)

    @property
    def all_headers(self) -> Headers:
        """Every header the client will see, as a ``Headers`` bag."""
        bag = Headers()
        if self.content_type is not None:  # type: ignore[attr-defined]
            bag.append("content-type", self.content_type)  # type: ignore[attr-defined]
        for name, value in self.headers:  # type: ignore[attr-defined]
            bag.append(name, value)
        for cookie in getattr(self, "cookies", ()):
            bag.append("set-cookie", cookie.to_header_value())
        return bag

    @property
    def status_text(self) -> str:
        """Reason phrase for the status code."""
        return status_text(self.status)  # type: ignore[attr-defined]


@dataclass(frozen=True, slots=True)
class Response(_HeaderOps):
    """An HTTP response built through immutable transformations.

    Construct with a body, then chain ``.with_*()`` calls to set
    status, headers, and cookies. Each call returns a new ``Response``.
    ``content_type=None`` sends no ``Content-Type`` header (e.g. 204).
    """

    body: str | bytes = b""
    status: int = 200
    content_type: str | None = None
    headers: tuple[tuple[str, str], ...] = ()
    cookies: tuple[SetCookie, ...] = ()

    @classmethod
    def from_json(cls, value: Any, *, status: int = 200) -> Response:
        """Serialize *value* as a JSON response."""
        return cls(
            body=json_module.dumps(value, default=str),
            status=status,
            content_type="application/json; charset=UTF-8",
        )

    # -- Cookies --

    def with_cookie(
        self,
        name: str,
        value: str,
        *,
        max_age: int | None = None,
        path: str = "/",
        domain: str | None = None,
        secure: bool = False,
        httponly: bool = True,
        samesite: str = "lax",
    ) -> Response:
        """Return a new Response with an additional Set-Cookie."""
        cookie = SetCookie(
            name=name,
            value=value,
            max_age=max_age,
            path=path,
            domain=domain,
            secure=secure,
            httponly=httponly,
            samesite=samesite,
        )
        return replace(self, cookies=(*self.cookies, cookie))

    def without_cookie(self, name: str, path: str = "/") -> Response:
        """Return a new Response that deletes a cookie (Max-Age=0)."""
        cookie = SetCookie(name=name, value="", max_age=0, path=path)
        return replace(self, cookies=(*self.cookies, cookie))

    # -- Body helpers --

    @property
    def body_bytes(self) -> bytes:
        """Body as bytes."""
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return self.body

    @property
    def text(self) -> str:
        """Body as string."""
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8")
        return self.body

    def json(self) -> Any:
        """Body parsed as JSON."""
        return json_module.loads(self.body_bytes)


@dataclass(frozen=True, slots=True)
class StreamingResponse(_HeaderOps):
    """A response whose body is produced chunk by chunk.

    Supports the same ``.with_*()`` chainable API as ``Response`` so
    status handlers can modify headers/status without knowing the
    response is streamed.
    """

    chunks: Iterator[str | bytes] | AsyncIterator[str | bytes]
    status: int = 200
    content_type: str | None = None
    headers: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True, slots=True)
class Redirect:
    """A redirect return value, coerced to a ``Location`` response."""

    url: str
    status: int = 302
    headers: tuple[tuple[str, str], ...] = ()


# Any response the router can deliver
type AnyResponse = Response | StreamingResponse
