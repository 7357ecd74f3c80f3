"""Route and match-result dataclasses."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from perch._internal.invoke import invoke
from perch._internal.types import ErrorHandler, Handler
from perch.context import Context, context_var
from perch.errors import ConfigurationError, HTTPError
from perch.http.headers import Headers
from perch.routing.coerce import DECLINED, coerce_result
from perch.routing.pattern import PathMatcher, compile_pattern

if TYPE_CHECKING:
    from perch.http.request import Request
    from perch.http.response import AnyResponse
    from perch.routing.coerce import _Declined
    from perch.transport import RequestEvent

logger = logging.getLogger("perch.route")

HTTP_METHODS = frozenset(
    {"CONNECT", "DELETE", "GET", "HEAD", "OPTIONS", "PATCH", "POST", "PUT", "TRACE"}
)


class _NoMatch:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NO_MATCH"

    def __bool__(self) -> bool:
        return False


NO_MATCH = _NoMatch()


@dataclass(frozen=True, slots=True)
class MethodMismatch:
    """The path matched but the method didn't. ``allowed`` feeds ``Allow``."""

    allowed: frozenset[str]

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class RouteMatch:
    """Result of a successful route match."""

    route: Route
    params: dict[str, str]


def normalize_methods(methods: str | Iterable[str]) -> frozenset[str]:
    """Upper-case and validate a method or collection of methods."""
    if isinstance(methods, str):
        methods = [methods]
    normalized = frozenset(m.upper() for m in methods)
    if not normalized:
        msg = "A route needs at least one HTTP method"
        raise ConfigurationError(msg)
    unknown = normalized - HTTP_METHODS
    if unknown:
        msg = f"Unknown HTTP method(s): {', '.join(sorted(unknown))}"
        raise ConfigurationError(msg)
    return normalized


@dataclass(frozen=True, slots=True, eq=False)
class Route:
    """A registered (pattern, methods, handler) triple.

    Shared by every request that matches it, so nothing per-request is
    ever stored here: ``matches`` returns the params and ``handle`` takes
    them back as an argument.
    """

    path: str
    methods: frozenset[str]
    handler: Handler
    name: str | None = None
    sensitive: bool = False
    trailing: bool = True
    serializer: Any = None
    deserializer: Any = None
    error_handler: ErrorHandler | None = None
    matcher: PathMatcher = field(init=False, repr=False)
    _on_remove: Callable[[Route], None] | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not callable(self.handler):
            msg = f"Handler for route {self.path!r} is not callable"
            raise ConfigurationError(msg)
        object.__setattr__(self, "methods", normalize_methods(self.methods))
        matcher = compile_pattern(self.path, sensitive=self.sensitive, trailing=self.trailing)
        object.__setattr__(self, "matcher", matcher)
        logger.debug("created route %s %s", "|".join(sorted(self.methods)), self.path)

    def remove(self) -> None:
        """Detach this route from its router. Later calls do nothing."""
        if self._on_remove is not None:
            self._on_remove(self)

    def matches(self, method: str, pathname: str) -> RouteMatch | MethodMismatch | _NoMatch:
        """Test a request against this route."""
        params = self.matcher.match(pathname)
        if params is None:
            return NO_MATCH
        if method.upper() in self.methods:
            return RouteMatch(route=self, params=params)
        return MethodMismatch(allowed=self.methods)

    async def handle(
        self,
        event: RequestEvent,
        response_headers: Headers,
        params: Mapping[str, str],
        *,
        secure: bool = False,
    ) -> AnyResponse | _Declined | None:
        """Run the handler and coerce its result.

        Exceptions from the handler propagate to the caller.
        """
        ctx = Context(
            event,
            response_headers,
            params,
            deserializer=self.deserializer,
            secure=secure,
        )
        token = context_var.set(ctx)
        try:
            result = await invoke(self.handler, ctx)
        finally:
            context_var.reset(token)
        return await coerce_result(
            result,
            response_headers,
            serializer=self.serializer,
            params=params,
            request=event.request,
        )

    async def recover(self, request: Request, exc: BaseException) -> AnyResponse | None:
        """Give the route's own error handler a chance to answer *exc*.

        Non-response results are coerced like handler results, with the
        error's status. ``None`` and ``DECLINED`` leave *exc* unanswered.
        """
        if self.error_handler is None:
            return None
        result = await invoke(self.error_handler, request, exc)
        status = exc.status if isinstance(exc, HTTPError) else 500
        coerced = await coerce_result(
            result, Headers(), status=status, serializer=self.serializer, request=request
        )
        if coerced is None or coerced is DECLINED:
            return None
        return coerced
