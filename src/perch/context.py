"""Per-call handler context.

A ``Context`` is what a route handler receives: the request, the matched
params, the response header bag and a few conveniences. One is built per
handler call and never shared.

The current context is also published through a ``ContextVar`` so helper
code deep in a handler can reach it without threading it through::

    from perch.context import get_context

    def current_user_id() -> str | None:
        return get_context().cookies.get("uid")
"""

from __future__ import annotations

import json as json_module
import logging
from collections.abc import Mapping
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

from perch._internal.invoke import invoke
from perch.errors import HTTPError
from perch.http.cookies import SetCookie
from perch.http.headers import Headers
from perch.http.query import QueryParams
from perch.http.request import Request

if TYPE_CHECKING:
    from perch.transport import Addr, RequestEvent

logger = logging.getLogger("perch.context")

_UNSET: Any = object()

context_var: ContextVar[Context] = ContextVar("perch_context")
"""The context of the handler currently running in this task."""


def get_context() -> Context:
    """Return the current handler context.

    Raises ``LookupError`` if called outside a handler.
    """
    return context_var.get()


class Context:
    """Request-scoped view handed to route and status handlers.

    Handlers read the request through it and add response headers or
    cookies to ``response_headers``; the router merges that bag onto
    whatever response the handler produces.
    """

    __slots__ = ("_body", "_deserializer", "_event", "params", "response_headers", "secure")

    def __init__(
        self,
        event: RequestEvent,
        response_headers: Headers,
        params: Mapping[str, str] | None = None,
        *,
        deserializer: Any = None,
        secure: bool = False,
    ) -> None:
        self._event = event
        self._deserializer = deserializer
        self._body: Any = _UNSET
        self.params: Mapping[str, str] = params if params is not None else {}
        self.response_headers = response_headers
        self.secure = secure

    def __repr__(self) -> str:
        return f"<Context {self.request.method} {self.request.path} params={dict(self.params)}>"

    # -- Event passthrough --

    @property
    def id(self) -> str:
        """Unique id of the request event (also sent as the request-id header)."""
        return self._event.id

    @property
    def addr(self) -> Addr | None:
        return self._event.addr

    @property
    def env(self) -> Mapping[str, Any]:
        """Transport-specific environment (e.g. the ASGI scope)."""
        return self._event.env

    @property
    def request(self) -> Request:
        return self._event.request

    @property
    def url(self) -> str:
        return self.request.url

    @property
    def query(self) -> QueryParams:
        return self.request.query

    @property
    def cookies(self) -> Mapping[str, str]:
        return self.request.cookies

    # -- Cookies --

    def set_cookie(self, name: str, value: str, **options: Any) -> None:
        """Queue a ``Set-Cookie`` header on the response.

        ``secure`` defaults to whether the request arrived over TLS.
        """
        options.setdefault("secure", self.secure)
        cookie = SetCookie(name=name, value=value, **options)
        self.response_headers.append("set-cookie", cookie.to_header_value())

    def delete_cookie(self, name: str, *, path: str = "/", domain: str | None = None) -> None:
        """Queue an expiring ``Set-Cookie`` for *name*."""
        cookie = SetCookie(name=name, value="", max_age=0, path=path, domain=domain)
        self.response_headers.append("set-cookie", cookie.to_header_value())

    # -- Body --

    async def body(self) -> Any:
        """Decode the request body once and cache it.

        Uses the route's deserializer when one was given, JSON otherwise.
        Returns ``None`` when there is no body, when the body was already
        consumed elsewhere, or when it can't be decoded.
        """
        if self._body is not _UNSET:
            return self._body
        self._body = None
        request = self.request
        if request.body_used:
            return None
        try:
            text = await request.text()
            if not text:
                return None
            if self._deserializer is not None:
                self._body = await invoke(self._deserializer.parse, text, self.params, request)
            else:
                self._body = json_module.loads(text)
        except (ValueError, TypeError) as exc:
            logger.debug("Could not decode body of %s %s: %s", request.method, request.path, exc)
            self._body = None
        return self._body

    async def text(self) -> str:
        return await self.request.text()

    async def json(self) -> Any:
        return await self.request.json()

    # -- Upgrade --

    def upgrade(self, **options: Any) -> Any:
        """Upgrade the connection (e.g. to a WebSocket) if the transport can.

        The transport responds to the event itself; the router notices and
        skips delivering a response of its own.

        Raises:
            HTTPError: 501 if the transport doesn't support upgrades.
        """
        upgrade = getattr(self._event, "upgrade", None)
        if upgrade is None:
            raise HTTPError(status=501, detail="Connection upgrade is not supported")
        return upgrade(**options)
