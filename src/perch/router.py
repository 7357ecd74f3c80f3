"""The Router: registration, dispatch and graceful shutdown.

Lifecycle:
    1. Setup: ``add_route``, verb shortcuts, ``on_status``, hook decorators
    2. Serve: ``listen(server)`` dispatches every request event the
       transport yields, one task per request
    3. Shutdown: the ``signal`` passed to ``listen`` is set; in-flight
       requests drain, then the transport closes

Each request gets exactly one response. Failures inside one request are
caught at that request's dispatch boundary and never affect another.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

import anyio

from perch._internal.types import Handler, Hook, StatusHandler
from perch.config import RouterConfig
from perch.errors import (
    AlreadyRespondedError,
    DrainTimeout,
    HTTPError,
    MethodNotAllowed,
    NotFound,
    RequestAborted,
)
from perch.hooks import (
    ErrorEvent,
    HandledEvent,
    Hooks,
    ListenEvent,
    NotFoundEvent,
    RequestReceived,
)
from perch.http.headers import Headers
from perch.http.request import Request
from perch.http.response import AnyResponse, Response
from perch.routing.coerce import DECLINED
from perch.routing.route import MethodMismatch, Route, RouteMatch
from perch.routing.status_route import StatusFilter, StatusRoute
from perch.server.errors import error_from_exception, response_from_http_error
from perch.transport import Addr, LocalRequestEvent, RequestEvent, RequestServer

ALL_METHODS = ("DELETE", "GET", "POST", "PUT")


class Router:
    """An ordered collection of routes and status routes.

    Usage::

        router = Router()

        @router.get("/books/:id")
        def show(ctx):
            return {"title": BOOKS[ctx.params["id"]]}

        @router.on_status("client-error")
        def shape(ctx, status, response):
            return {"error": True}

    Routes are tried in registration order; the first one whose handler
    doesn't return ``DECLINED`` answers. A handler returning ``None``
    answers ``204 No Content``.
    """

    def __init__(
        self,
        config: RouterConfig | None = None,
        *,
        logger: logging.Logger | logging.LoggerAdapter[logging.Logger] | None = None,
    ) -> None:
        self.config = config or RouterConfig()
        self.logger = logger or logging.getLogger("perch.router")
        self.hooks = Hooks()
        # dicts as insertion-ordered sets
        self._routes: dict[Route, None] = {}
        self._status_routes: dict[StatusRoute, None] = {}
        self._in_flight: dict[anyio.Event, anyio.CancelScope] = {}
        self._closing = False

    def __repr__(self) -> str:
        return (
            f"<Router routes={len(self._routes)} status_routes={len(self._status_routes)}"
            f" in_flight={len(self._in_flight)}>"
        )

    # -- Introspection --

    @property
    def routes(self) -> tuple[Route, ...]:
        return tuple(self._routes)

    @property
    def status_routes(self) -> tuple[StatusRoute, ...]:
        return tuple(self._status_routes)

    @property
    def in_flight(self) -> int:
        """Number of requests currently being dispatched."""
        return len(self._in_flight)

    @property
    def closing(self) -> bool:
        return self._closing

    # -- Route registration --

    def add_route(
        self,
        path: str,
        methods: str | Iterable[str],
        handler: Handler,
        **options: Any,
    ) -> Route:
        """Register *handler* for *path* and *methods*.

        Options: ``name``, ``sensitive``, ``trailing``, ``serializer``,
        ``deserializer``, ``error_handler``. Returns the ``Route``; call
        ``route.remove()`` to unregister it.
        """
        route = Route(
            path=path,
            methods=methods,  # type: ignore[arg-type]
            handler=handler,
            _on_remove=self._remove_route,
            **options,
        )
        self._routes[route] = None
        self.logger.debug("registered %s %s", ",".join(sorted(route.methods)), path)
        return route

    def _remove_route(self, route: Route) -> None:
        if route in self._routes:
            del self._routes[route]
            self.logger.debug("removed %s %s", ",".join(sorted(route.methods)), route.path)

    def route(
        self,
        path: str,
        methods: str | Iterable[str] = ("GET",),
        handler: Handler | None = None,
        **options: Any,
    ) -> Any:
        """Register a route directly, or return a decorator that does.

        ``router.route("/x", ["GET"], handler)`` returns the ``Route``.
        ``@router.route("/x", ["GET"])`` registers and returns the function
        unchanged.
        """
        if handler is not None:
            return self.add_route(path, methods, handler, **options)

        def decorator(func: Handler) -> Handler:
            self.add_route(path, methods, func, **options)
            return func

        return decorator

    def get(self, path: str, handler: Handler | None = None, **options: Any) -> Any:
        return self.route(path, ("GET",), handler, **options)

    def post(self, path: str, handler: Handler | None = None, **options: Any) -> Any:
        return self.route(path, ("POST",), handler, **options)

    def put(self, path: str, handler: Handler | None = None, **options: Any) -> Any:
        return self.route(path, ("PUT",), handler, **options)

    def patch(self, path: str, handler: Handler | None = None, **options: Any) -> Any:
        return self.route(path, ("PATCH",), handler, **options)

    def delete(self, path: str, handler: Handler | None = None, **options: Any) -> Any:
        return self.route(path, ("DELETE",), handler, **options)

    def head(self, path: str, handler: Handler | None = None, **options: Any) -> Any:
        return self.route(path, ("HEAD",), handler, **options)

    def options(self, path: str, handler: Handler | None = None, **options: Any) -> Any:
        return self.route(path, ("OPTIONS",), handler, **options)

    def all(self, path: str, handler: Handler | None = None, **options: Any) -> Any:
        """Register for DELETE, GET, POST and PUT."""
        return self.route(path, ALL_METHODS, handler, **options)

    # -- Status route registration --

    def add_status_route(
        self,
        status: StatusFilter | Iterable[StatusFilter],
        handler: StatusHandler,
    ) -> StatusRoute:
        """Register *handler* for responses whose status matches *status*.

        *status* is a code, a range tag (``"client-error"``, ...) or a
        collection of either.
        """
        status_route = StatusRoute(
            status=status,  # type: ignore[arg-type]
            handler=handler,
            _on_remove=self._remove_status_route,
        )
        self._status_routes[status_route] = None
        self.logger.debug("registered status route %s", status_route.status)
        return status_route

    def _remove_status_route(self, status_route: StatusRoute) -> None:
        self._status_routes.pop(status_route, None)

    def on_status(self, *status: StatusFilter) -> Callable[[StatusHandler], StatusHandler]:
        """Decorator form of ``add_status_route``."""

        def decorator(func: StatusHandler) -> StatusHandler:
            self.add_status_route(status, func)
            return func

        return decorator

    # -- Hooks --

    def on_request(self, hook: Hook) -> Hook:
        return self.hooks.add("request", hook)

    def on_not_found(self, hook: Hook) -> Hook:
        return self.hooks.add("not_found", hook)

    def on_handled(self, hook: Hook) -> Hook:
        return self.hooks.add("handled", hook)

    def on_error(self, hook: Hook) -> Hook:
        return self.hooks.add("error", hook)

    def on_listen(self, hook: Hook) -> Hook:
        return self.hooks.add("listen", hook)

    # -- Dispatch --

    async def handle(
        self,
        request: Request,
        *,
        addr: Addr | None = None,
        secure: bool | None = None,
    ) -> AnyResponse:
        """Dispatch a bare request without a transport and return the response.

        Raises whatever the event was settled with if no response could
        be produced.
        """
        event = LocalRequestEvent(request, addr=addr)
        await self.dispatch(event, secure=secure)
        return await event.response()

    async def dispatch(self, event: RequestEvent, *, secure: bool | None = None) -> None:
        """Run one request event to completion. Never raises for request faults."""
        done = anyio.Event()
        start = time.perf_counter()
        try:
            with anyio.CancelScope() as scope:
                self._in_flight[done] = scope
                await self._dispatch(event, start, self.config.secure if secure is None else secure)
            if scope.cancelled_caught:
                self.logger.warning(
                    "Cancelled %s %s after drain timeout", event.request.method, event.request.path
                )
                await self._settle(event, DrainTimeout("Request cancelled during shutdown"))
        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                await self._settle(event, RequestAborted("Request dispatch was cancelled"))
            raise
        finally:
            self._in_flight.pop(done, None)
            done.set()

    async def _dispatch(self, event: RequestEvent, start: float, secure: bool) -> None:
        request = event.request
        route: Route | None = None
        delivered: AnyResponse | None = None
        try:
            response, route = await self._resolve(event, secure)
            if response is not None and not event.responded:
                response = self._with_request_id(event, response)
                try:
                    await event.respond(response)
                except AlreadyRespondedError:
                    raise
                except Exception as exc:
                    await self._transport_fault(event, exc, route)
                else:
                    delivered = response
            duration = time.perf_counter() - start
            self.logger.debug(
                "%s %s -> %s (%.1fms)",
                request.method,
                request.path,
                delivered.status if delivered is not None else "-",
                duration * 1000,
            )
            await self.hooks.emit("handled", HandledEvent(event, duration, delivered, route))
        except Exception as exc:
            # Dispatch boundary: hook failures and double responds end up here
            self.logger.exception("Error while dispatching %s %s", request.method, request.path)
            if event.responded:
                return
            try:
                await self._respond_with_error(event, exc, secure)
            except Exception as fallback_exc:
                self.logger.exception("Could not answer %s %s", request.method, request.path)
                await self._settle(event, fallback_exc)

    async def _respond_with_error(self, event: RequestEvent, exc: Exception, secure: bool) -> None:
        """Answer *exc* with the default error response, bypassing error hooks."""
        error = error_from_exception(exc)
        response = response_from_http_error(
            event.request,
            error,
            prefer_json=self.config.prefer_json,
            expose_errors=self.config.expose_errors,
            exc=exc,
        )
        response = await self._apply_status_routes(
            event, response, status=error.status, secure=secure
        )
        if event.responded:
            return
        await event.respond(self._with_request_id(event, response))

    async def _settle(self, event: RequestEvent, reason: BaseException) -> None:
        """Close an event that never got a response."""
        if event.responded:
            return
        try:
            await event.error(reason)
        except Exception:
            self.logger.exception("Could not settle request event %s", event.id)

    async def _resolve(
        self, event: RequestEvent, secure: bool
    ) -> tuple[AnyResponse | None, Route | None]:
        """Find the response for *event*, status routes applied.

        Returns ``(None, route)`` when something else already responded.
        """
        request = event.request
        headers = Headers()
        await self.hooks.emit("request", RequestReceived(event, headers))
        if event.responded:
            return None, None

        allowed: set[str] = set()
        for route in tuple(self._routes):
            match route.matches(request.method, request.path):
                case RouteMatch(params=params):
                    try:
                        result = await route.handle(event, headers, params, secure=secure)
                    except AlreadyRespondedError:
                        raise
                    except Exception as exc:
                        response = await self._recover(event, route, exc, secure)
                        return response, route
                    if result is DECLINED:
                        continue
                    if event.responded:
                        return None, route
                    if result is None:
                        result = Response(status=204).merge_headers(headers)
                    return await self._apply_status_routes(event, result, secure=secure), route
                case MethodMismatch(allowed=methods):
                    allowed |= methods

        response = await self._not_found(event, headers, frozenset(allowed))
        if event.responded:
            return None, None
        return await self._apply_status_routes(event, response, secure=secure), None

    async def _recover(
        self, event: RequestEvent, route: Route, exc: Exception, secure: bool
    ) -> AnyResponse | None:
        """Turn a handler fault into a response, then run the status chain."""
        request = event.request
        try:
            recovered = await route.recover(request, exc)
        except AlreadyRespondedError:
            raise
        except Exception as handler_exc:
            self.logger.exception("Error handler for %s failed", route.path)
            exc = handler_exc
            recovered = None
        if isinstance(exc, HTTPError):
            status = exc.status
        elif recovered is not None:
            status = recovered.status
        else:
            status = 500
        response = recovered if recovered is not None else await self._error(event, exc, route=route)
        if event.responded or response is None:
            return None
        return await self._apply_status_routes(event, response, status=status, secure=secure)

    async def _error(
        self,
        event: RequestEvent,
        exc: BaseException,
        *,
        route: Route | None = None,
    ) -> AnyResponse:
        """Let ``on_error`` observers answer *exc*, else build the default."""
        request = event.request
        if isinstance(exc, HTTPError):
            self.logger.debug("%d %s %s: %s", exc.status, request.method, request.path, exc.detail)
        else:
            self.logger.exception("500 %s %s", request.method, request.path, exc_info=exc)
        message = str(exc) or type(exc).__name__
        error_event = ErrorEvent(message, exc, True, event, route)
        supplied = await self.hooks.emit_for_response("error", error_event)
        if supplied is not None:
            return supplied
        return response_from_http_error(
            request,
            error_from_exception(exc),
            prefer_json=self.config.prefer_json,
            expose_errors=self.config.expose_errors,
            exc=exc,
        )

    async def _not_found(
        self, event: RequestEvent, headers: Headers, allowed: frozenset[str]
    ) -> AnyResponse:
        request = event.request
        error: HTTPError
        if allowed and self.config.method_not_allowed:
            error = MethodNotAllowed(allowed)
        else:
            error = NotFound()
        default = response_from_http_error(
            request,
            error,
            prefer_json=self.config.prefer_json,
            expose_errors=self.config.expose_errors,
        ).merge_headers(headers)
        found = await self.hooks.emit_for_response(
            "not_found", NotFoundEvent(event, default, None, allowed)
        )
        return found if found is not None else default

    async def _apply_status_routes(
        self,
        event: RequestEvent,
        response: AnyResponse,
        *,
        status: int | None = None,
        secure: bool = False,
    ) -> AnyResponse:
        """Run every matching status route over *response*, in order.

        Entries are tested against the status that triggered the chain;
        a failing status route ends it with an error response.
        """
        trigger = response.status if status is None else status
        for status_route in tuple(self._status_routes):
            if not status_route.matches(trigger):
                continue
            bag = Headers(response.headers)
            try:
                result = await status_route.handle(
                    event, bag, trigger, response, secure=secure
                )
            except AlreadyRespondedError:
                raise
            except Exception as exc:
                return await self._error(event, exc)
            if result is not None:
                response = result
        return response

    async def _transport_fault(
        self, event: RequestEvent, exc: Exception, route: Route | None
    ) -> None:
        request = event.request
        self.logger.warning(
            "Could not deliver response for %s %s: %s", request.method, request.path, exc
        )
        try:
            await self.hooks.emit_for_response(
                "error", ErrorEvent(str(exc) or type(exc).__name__, exc, False, event, route)
            )
        except Exception:
            self.logger.exception("error hook failed for transport fault")

    def _with_request_id(self, event: RequestEvent, response: AnyResponse) -> AnyResponse:
        name = self.config.request_id_header
        if name is None or response.header(name) is not None:
            return response
        return response.with_header(name, event.id)

    async def _reject(self, event: RequestEvent) -> None:
        """Answer an event that arrived after shutdown began."""
        response = response_from_http_error(
            event.request,
            HTTPError(status=503, detail="Server is shutting down"),
            prefer_json=self.config.prefer_json,
        )
        try:
            await event.respond(self._with_request_id(event, response))
        except Exception:
            self.logger.warning("Could not reject late request %s", event.id)

    # -- Serving --

    async def listen(
        self,
        server: RequestServer,
        *,
        signal: anyio.Event | None = None,
        drain_timeout: float | None = None,
    ) -> None:
        """Serve request events from *server* until it is exhausted.

        Setting *signal* starts a graceful shutdown: new events are
        answered ``503``, in-flight requests are awaited (cancelled after
        *drain_timeout* seconds, or ``RouterConfig.drain_timeout``, if
        set), then ``server.close()`` is called.
        """
        timeout = self.config.drain_timeout if drain_timeout is None else drain_timeout
        self._closing = False
        addr = await server.listen()
        scheme = "https" if self.config.secure else "http"
        self.logger.info("Listening on %s://%s", scheme, addr)
        await self.hooks.emit("listen", ListenEvent(addr, self.config.secure))

        async with anyio.create_task_group() as tg:
            watcher = anyio.CancelScope()
            if signal is not None:
                tg.start_soon(self._close_on, signal, server, timeout, watcher)
            async for event in server:
                if self._closing:
                    tg.start_soon(self._reject, event)
                else:
                    tg.start_soon(self.dispatch, event)
            watcher.cancel()
            await self.drain(timeout)
        self.logger.info("Stopped listening on %s://%s", scheme, addr)

    async def _close_on(
        self,
        signal: anyio.Event,
        server: RequestServer,
        timeout: float | None,
        scope: anyio.CancelScope,
    ) -> None:
        with scope:
            await signal.wait()
            self.logger.info("Shutting down, draining %d request(s)", len(self._in_flight))
            await self.drain(timeout)
            with anyio.CancelScope(shield=True):
                await server.close()

    async def drain(self, timeout: float | None = None) -> None:
        """Stop taking requests and wait for in-flight ones to settle.

        Without *timeout* this waits as long as the slowest handler takes.
        With one, requests still running afterwards are cancelled and
        settled with ``DrainTimeout``.
        """
        self._closing = True
        with anyio.move_on_after(timeout) as scope:
            for done in tuple(self._in_flight):
                await done.wait()
        if scope.cancelled_caught:
            self.logger.warning(
                "Drain timed out after %ss; cancelling %d request(s)", timeout, len(self._in_flight)
            )
            for cancel_scope in tuple(self._in_flight.values()):
                cancel_scope.cancel()
            for done in tuple(self._in_flight):
                await done.wait()
