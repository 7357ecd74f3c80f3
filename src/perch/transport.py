"""Transport protocols consumed by the router.

A ``RequestServer`` yields ``RequestEvent`` objects; the router answers
each one exactly once through ``respond()`` or ``error()``. Concrete
transports live in ``perch.server.asgi`` (production) and
``perch.testing`` (in memory).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import anyio

from perch.errors import AlreadyRespondedError, RequestAborted
from perch.http.request import Request
from perch.http.response import AnyResponse

logger = logging.getLogger("perch.transport")


@dataclass(frozen=True, slots=True)
class Addr:
    """A listening (or peer) address."""

    hostname: str
    port: int
    transport: str = "tcp"

    def __str__(self) -> str:
        return f"{self.hostname}:{self.port}"


@runtime_checkable
class RequestEvent(Protocol):
    """One inbound request awaiting exactly one response."""

    @property
    def id(self) -> str: ...

    @property
    def addr(self) -> Addr | None: ...

    @property
    def env(self) -> Mapping[str, Any]: ...

    @property
    def request(self) -> Request: ...

    @property
    def responded(self) -> bool: ...

    async def respond(self, response: AnyResponse) -> None: ...

    async def error(self, reason: Any) -> None: ...

    async def response(self) -> AnyResponse: ...


@runtime_checkable
class RequestServer(Protocol):
    """Source of request events.

    ``listen()`` binds and returns the address; iterating the server
    yields events until ``close()`` is called.
    """

    async def listen(self) -> Addr: ...

    def __aiter__(self) -> AsyncIterator[RequestEvent]: ...

    async def close(self) -> None: ...


class BaseRequestEvent:
    """Exactly-once bookkeeping shared by concrete request events.

    ``respond()`` and ``error()`` settle the event; a second call to
    either raises ``AlreadyRespondedError``. ``response()`` waits for the
    settlement and returns the response (or raises the error).
    Subclasses override ``_deliver`` to put the response on the wire.
    """

    def __init__(
        self,
        request: Request,
        *,
        addr: Addr | None = None,
        env: Mapping[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        self._request = request
        self._addr = addr
        self._env: Mapping[str, Any] = env if env is not None else {}
        self._id = event_id or uuid.uuid4().hex
        self._settled = anyio.Event()
        self._response: AnyResponse | None = None
        self._reason: BaseException | None = None
        self._responded = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._id} {self._request.method} {self._request.path}>"

    @property
    def id(self) -> str:
        return self._id

    @property
    def addr(self) -> Addr | None:
        return self._addr

    @property
    def env(self) -> Mapping[str, Any]:
        return self._env

    @property
    def request(self) -> Request:
        return self._request

    @property
    def responded(self) -> bool:
        return self._responded

    def _claim(self) -> None:
        if self._responded:
            msg = "Request already responded to."
            raise AlreadyRespondedError(msg)
        self._responded = True

    async def respond(self, response: AnyResponse) -> None:
        """Deliver *response*. Raises ``AlreadyRespondedError`` if settled."""
        self._claim()
        try:
            await self._deliver(response)
        except BaseException as exc:
            self._reason = exc
            raise
        else:
            self._response = response
        finally:
            self._settled.set()

    async def error(self, reason: Any) -> None:
        """Settle the event without a response (transport-level failure)."""
        self._claim()
        if not isinstance(reason, BaseException):
            reason = RequestAborted(str(reason))
        self._reason = reason
        try:
            await self._abort(reason)
        finally:
            self._settled.set()

    async def wait(self) -> None:
        """Wait until the event is settled, however that happened."""
        await self._settled.wait()

    async def response(self) -> AnyResponse:
        """Wait for the event to settle and return what was delivered."""
        await self._settled.wait()
        if self._reason is not None:
            raise self._reason
        assert self._response is not None
        return self._response

    async def _deliver(self, response: AnyResponse) -> None:
        """Write *response* to the client. No-op by default."""

    async def _abort(self, reason: BaseException) -> None:
        """Tell the client the request failed. No-op by default."""


class LocalRequestEvent(BaseRequestEvent):
    """An in-process event with no wire behind it.

    Used by ``Router.handle()``: the response is simply kept for the
    caller to collect.
    """
