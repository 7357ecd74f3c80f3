"""Status routes: handlers triggered by the status of an outgoing response.

Every matching status route runs, in registration order, each one seeing
the response the previous one produced::

    @router.on_status("client-error")
    def shape_errors(ctx, status, response):
        return {"error": True}

    @router.on_status(200, 201)
    def no_store(ctx, status, response):
        ctx.response_headers["Cache-Control"] = "no-store"
        return response
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from perch._internal.invoke import invoke
from perch._internal.types import StatusHandler
from perch.context import Context, context_var
from perch.errors import ConfigurationError
from perch.http.headers import Headers
from perch.http.status import STATUS_RANGES, in_range
from perch.routing.coerce import DECLINED, coerce_result

if TYPE_CHECKING:
    from perch.http.response import AnyResponse
    from perch.transport import RequestEvent

logger = logging.getLogger("perch.status_route")

type StatusFilter = int | str


def normalize_filter(status: StatusFilter | Iterable[StatusFilter]) -> tuple[StatusFilter, ...]:
    """Validate a status filter, accepting one entry or a collection."""
    entries = (status,) if isinstance(status, (int, str)) else tuple(status)
    if not entries:
        msg = "A status route needs at least one status or range"
        raise ConfigurationError(msg)
    for entry in entries:
        if isinstance(entry, bool):
            msg = f"Invalid status filter entry: {entry!r}"
            raise ConfigurationError(msg)
        if isinstance(entry, int):
            if not 100 <= entry <= 599:
                msg = f"Status code out of range: {entry}"
                raise ConfigurationError(msg)
        elif entry not in STATUS_RANGES:
            msg = f"Unknown status range {entry!r}. Expected one of {sorted(STATUS_RANGES)}"
            raise ConfigurationError(msg)
    return entries


@dataclass(frozen=True, slots=True, eq=False)
class StatusRoute:
    """A registered (status filter, handler) pair."""

    status: tuple[StatusFilter, ...]
    handler: StatusHandler
    _on_remove: Callable[[StatusRoute], None] | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not callable(self.handler):
            msg = "Status route handler is not callable"
            raise ConfigurationError(msg)
        object.__setattr__(self, "status", normalize_filter(self.status))

    def remove(self) -> None:
        """Detach this status route from its router. Later calls do nothing."""
        if self._on_remove is not None:
            self._on_remove(self)

    def matches(self, status: int) -> bool:
        """True if any filter entry equals *status* or contains it."""
        for entry in self.status:
            if isinstance(entry, int):
                if entry == status:
                    return True
            elif in_range(status, entry):
                return True
        return False

    async def handle(
        self,
        event: RequestEvent,
        response_headers: Headers,
        status: int,
        response: AnyResponse | None = None,
        *,
        secure: bool = False,
    ) -> AnyResponse | None:
        """Run the handler; ``None`` means "leave the response as it is".

        Raw body results keep *status*. Exceptions propagate.
        """
        ctx = Context(event, response_headers, secure=secure)
        token = context_var.set(ctx)
        try:
            result = await invoke(self.handler, ctx, status, response)
        finally:
            context_var.reset(token)
        if result is DECLINED:
            return None
        logger.debug("status route %s handled %d", self.status, status)
        return await coerce_result(result, response_headers, status=status, request=event.request)
