"""Ready-made route handlers."""

from typing import Any

from perch.context import Context
from perch.http.headers import Headers
from perch.http.response import AnyResponse
from perch.routing.coerce import coerce_result

IMMUTABLE_CACHE_CONTROL = "public, max-age=604800, immutable"


def immutable(value: Any, *, serializer: Any = None) -> Any:
    """A handler that always answers with *value*, marked cacheable forever.

    *value* is coerced like any handler result (a ``Response``, a body, or
    something to serialize, through *serializer* if given) and gets
    ``Cache-Control: public, max-age=604800, immutable``, replacing any
    cache-control it already had::

        router.get("/logo.svg", immutable(Response(SVG, content_type="image/svg+xml")))
    """
    if value is None:
        msg = "immutable() needs a value that produces a response, got None"
        raise TypeError(msg)

    async def handler(ctx: Context) -> AnyResponse:
        response = await coerce_result(
            value,
            Headers(),
            serializer=serializer,
            params=ctx.params,
            request=ctx.request,
        )
        return response.without_header("cache-control").with_header(  # type: ignore[union-attr]
            "Cache-Control", IMMUTABLE_CACHE_CONTROL
        )

    handler.__name__ = f"immutable_{type(value).__name__.lower()}"
    return handler
