"""Perch: an asynchronous HTTP request router.

Matches request events from a pluggable transport against an ordered set
of routes, turns handler results into responses, runs status-triggered
post-processors and delivers exactly one response per request.

Basic usage::

    from perch import Router
    from perch.server.asgi import ASGIRequestServer

    router = Router()

    @router.get("/books/:id")
    def show(ctx):
        return {"id": ctx.params["id"]}

    app = ASGIRequestServer(router)  # serve with any ASGI server
"""

import logging

__version__ = "0.1.0"
__all__ = [
    "DECLINED",
    "AlreadyRespondedError",
    "ConfigurationError",
    "Context",
    "HTTPError",
    "Headers",
    "MethodNotAllowed",
    "NotFound",
    "PerchError",
    "Redirect",
    "Request",
    "Response",
    "Route",
    "Router",
    "RouterConfig",
    "StatusRoute",
    "StreamingResponse",
    "get_context",
]

# Library logging stays silent until the application configures it
logging.getLogger("perch").addHandler(logging.NullHandler())


def __getattr__(name: str) -> object:
    """Lazy imports for public API.

    Keeps ``import perch`` fast while providing a clean top-level API.
    """
    if name == "Router":
        from perch.router import Router

        return Router

    if name == "RouterConfig":
        from perch.config import RouterConfig

        return RouterConfig

    if name == "Request":
        from perch.http.request import Request

        return Request

    if name == "Headers":
        from perch.http.headers import Headers

        return Headers

    if name in ("Response", "StreamingResponse", "Redirect"):
        from perch.http import response as _resp

        return getattr(_resp, name)

    if name == "Route":
        from perch.routing.route import Route

        return Route

    if name == "StatusRoute":
        from perch.routing.status_route import StatusRoute

        return StatusRoute

    if name == "DECLINED":
        from perch.routing.coerce import DECLINED

        return DECLINED

    if name in ("Context", "get_context"):
        from perch import context as _ctx

        return getattr(_ctx, name)

    if name in (
        "AlreadyRespondedError",
        "ConfigurationError",
        "HTTPError",
        "MethodNotAllowed",
        "NotFound",
        "PerchError",
    ):
        from perch import errors as _errors

        return getattr(_errors, name)

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
