"""ASGI transport.

``ASGIRequestServer`` is both an ASGI 3 application and a
``RequestServer``: the ASGI server calls it once per connection scope, it
turns each HTTP scope into an ``ASGIRequestEvent`` and feeds it to
``Router.listen`` through an in-memory stream.

Lifespan drives the router::

    router = Router()
    app = ASGIRequestServer(router)
    # uvicorn module:app / hypercorn module:app / pounce module:app

- ``lifespan.startup`` starts ``router.listen(app, signal=...)``
- ``lifespan.shutdown`` sets the signal: the router drains in-flight
  requests, then closes the transport

Without lifespan the requests are dispatched inline.
"""

import logging
from typing import Any

import anyio

from perch._internal.asgi import Receive, Scope, Send
from perch.config import RouterConfig
from perch.errors import HTTPError, RequestAborted
from perch.http.request import Request
from perch.http.response import AnyResponse
from perch.router import Router
from perch.server.errors import response_from_http_error
from perch.server.sender import send_any
from perch.transport import Addr, BaseRequestEvent

logger = logging.getLogger("perch.server")


class ASGIRequestEvent(BaseRequestEvent):
    """A request event that answers through an ASGI ``send`` callable."""

    def __init__(self, request: Request, send: Send, *, scope: Scope) -> None:
        client = scope.get("client")
        addr = Addr(client[0], client[1]) if client else None
        super().__init__(request, addr=addr, env=scope)
        self._send = send
        self._started = False

    async def _send_tracked(self, message: Any) -> None:
        if message["type"] == "http.response.start":
            self._started = True
        await self._send(message)

    async def _deliver(self, response: AnyResponse) -> None:
        try:
            await send_any(response, self._send_tracked, head=self.request.method == "HEAD")
        except Exception as exc:
            msg = f"Could not send response: {exc}"
            raise RequestAborted(msg) from exc

    async def _abort(self, reason: BaseException) -> None:
        if self._started:
            return
        try:
            await self._send_tracked(
                {
                    "type": "http.response.start",
                    "status": 500,
                    "headers": [(b"content-type", b"text/plain; charset=UTF-8")],
                }
            )
            await self._send({"type": "http.response.body", "body": b"Internal Server Error"})
        except Exception as exc:
            logger.debug("Could not send abort response for %s: %s", self.id, exc)


class ASGIRequestServer:
    """Serve a ``Router`` from any ASGI server."""

    def __init__(self, router: Router, *, config: RouterConfig | None = None) -> None:
        self.router = router
        self.config = config or router.config
        self._sender, self._receiver = anyio.create_memory_object_stream[ASGIRequestEvent](
            max_buffer_size=float("inf")
        )
        self._listening = False
        self._closed = False

    # -- RequestServer --

    async def listen(self) -> Addr:
        self._listening = True
        return Addr(self.config.hostname, self.config.port)

    def __aiter__(self) -> Any:
        return self._receiver.__aiter__()

    async def close(self) -> None:
        self._closed = True
        self._listening = False
        await self._sender.aclose()

    # -- ASGI --

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI 3.0 entry point."""
        if scope["type"] == "lifespan":
            await self._handle_lifespan(receive, send)
            return
        if scope["type"] != "http":
            logger.debug("Ignoring unsupported ASGI scope type %r", scope["type"])
            return

        request = Request.from_asgi(scope, receive)
        event = ASGIRequestEvent(request, send, scope=scope)

        if not self._closed:
            if not self._listening:
                await self.router.dispatch(event)
                return
            try:
                await self._sender.send(event)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                pass
            else:
                await event.wait()
                return

        response = response_from_http_error(
            request,
            HTTPError(status=503, detail="Server is shutting down"),
            prefer_json=self.config.prefer_json,
        )
        if self.config.request_id_header is not None:
            response = response.with_header(self.config.request_id_header, event.id)
        await event.respond(response)

    async def _handle_lifespan(self, receive: Receive, send: Send) -> None:
        """Run the ASGI lifespan protocol around ``Router.listen``."""
        message = await receive()
        if message["type"] != "lifespan.startup":
            return

        signal = anyio.Event()
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._serve, signal)
            await send({"type": "lifespan.startup.complete"})
            # Anything after startup (normally lifespan.shutdown) stops serving
            await receive()
            signal.set()

        await send({"type": "lifespan.shutdown.complete"})

    async def _serve(self, signal: anyio.Event) -> None:
        await self.router.listen(self, signal=signal)
