"""Lifecycle hooks.

Each hook kind has an ordered list of observers. Observers receive one
event dataclass and may be sync or async. For ``not_found`` and
``error`` an observer can supply a response by returning it (or by
assigning ``event.response``); later observers see it, and the last one
supplied wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from perch._internal.invoke import invoke
from perch._internal.types import Hook
from perch.http.response import AnyResponse, Response, StreamingResponse

if TYPE_CHECKING:
    from perch.http.headers import Headers
    from perch.routing.route import Route
    from perch.transport import Addr, RequestEvent

logger = logging.getLogger("perch.hooks")

HOOK_KINDS = ("request", "not_found", "handled", "error", "listen")


@dataclass(slots=True)
class RequestReceived:
    """A request arrived. Observers may respond early through ``event.respond()``."""

    event: RequestEvent
    response_headers: Headers


@dataclass(slots=True)
class NotFoundEvent:
    """No route produced a response. ``response`` holds the default."""

    event: RequestEvent
    response: AnyResponse | None = None
    route: Route | None = None
    allowed: frozenset[str] = frozenset()


@dataclass(slots=True)
class HandledEvent:
    """A request was settled. ``response`` is ``None`` if something else responded."""

    event: RequestEvent
    duration: float
    response: AnyResponse | None = None
    route: Route | None = None


@dataclass(slots=True)
class ErrorEvent:
    """Something failed while handling a request.

    ``respondable`` is False for transport faults: the client is gone and
    any response an observer supplies is ignored.
    """

    message: str
    cause: BaseException
    respondable: bool
    event: RequestEvent | None = None
    route: Route | None = None
    response: AnyResponse | None = None


@dataclass(slots=True)
class ListenEvent:
    """The transport is bound and the router is accepting requests."""

    addr: Addr
    secure: bool = False


@dataclass(slots=True)
class Hooks:
    """Ordered observer lists, one per hook kind."""

    request: list[Hook] = field(default_factory=list)
    not_found: list[Hook] = field(default_factory=list)
    handled: list[Hook] = field(default_factory=list)
    error: list[Hook] = field(default_factory=list)
    listen: list[Hook] = field(default_factory=list)

    def add(self, kind: str, hook: Hook) -> Hook:
        if kind not in HOOK_KINDS:
            msg = f"Unknown hook kind {kind!r}. Expected one of {HOOK_KINDS}"
            raise ValueError(msg)
        if not callable(hook):
            msg = f"{kind} hook is not callable: {hook!r}"
            raise TypeError(msg)
        getattr(self, kind).append(hook)
        return hook

    def remove(self, kind: str, hook: Hook) -> None:
        observers: list[Hook] = getattr(self, kind)
        if hook in observers:
            observers.remove(hook)

    async def emit(self, kind: str, payload: Any) -> None:
        """Call every observer of *kind* in registration order."""
        for hook in tuple(getattr(self, kind)):
            await invoke(hook, payload)

    async def emit_for_response(
        self, kind: str, payload: NotFoundEvent | ErrorEvent
    ) -> AnyResponse | None:
        """Call observers that may supply a response; the last one wins."""
        for hook in tuple(getattr(self, kind)):
            result = await invoke(hook, payload)
            if isinstance(result, (Response, StreamingResponse)):
                payload.response = result
            elif result is not None:
                logger.warning(
                    "%s hook %r returned %s; expected a Response or None",
                    kind,
                    hook,
                    type(result).__name__,
                )
        return payload.response
