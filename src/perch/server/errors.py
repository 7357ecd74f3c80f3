"""Default error responses.

Maps an ``HTTPError`` (or an unexpected exception wrapped as a 500) to a
Response whose body is negotiated from the request's ``Accept`` header:
JSON, an HTML page rendered with kida, or plain text.
"""

import json as json_module
import logging
import traceback
from collections.abc import Sequence

from kida import Environment

from perch.errors import HTTPError
from perch.http.request import Request
from perch.http.response import Response
from perch.http.status import status_text
from perch.routing.coerce import HTML, JSON, TEXT

logger = logging.getLogger("perch.server")

_ERROR_PAGE = """\
<!DOCTYPE html>
<html>
  <head>
    <title>{{ status_text }} - {{ status }}</title>
  </head>
  <body>
    <h1>{{ status_text }} - {{ status }}</h1>
    <h2>{{ message }}</h2>
    {% if stack %}<h3>Stack trace:</h3><pre>{{ stack }}</pre>{% end %}
  </body>
</html>
"""

_env = Environment(autoescape=True)
_error_template = _env.from_string(_ERROR_PAGE)


def _parse_accept(accept: str) -> list[tuple[str, float]]:
    ranges: list[tuple[str, float]] = []
    for part in accept.split(","):
        media, *params = part.split(";")
        media = media.strip().lower()
        if not media:
            continue
        q = 1.0
        for param in params:
            param = param.strip()
            if param.startswith("q="):
                try:
                    q = float(param[2:])
                except ValueError:
                    q = 1.0
        ranges.append((media, q))
    return ranges


def _quality(offer: str, ranges: list[tuple[str, float]]) -> float:
    """q-value for *offer*: the most specific matching range wins."""
    main = offer.split("/", 1)[0]
    best_specificity = -1
    quality = 0.0
    for media, q in ranges:
        if media == offer:
            specificity = 2
        elif media == f"{main}/*":
            specificity = 1
        elif media == "*/*":
            specificity = 0
        else:
            continue
        if specificity > best_specificity:
            best_specificity = specificity
            quality = q
    return quality


def preferred_media_type(accept: str | None, offers: Sequence[str]) -> str | None:
    """Pick the offer the client prefers most.

    No ``Accept`` header means anything goes: the first offer wins. Ties
    go to the earlier offer. Returns ``None`` when the client accepts none
    of them.
    """
    if not offers:
        return None
    if not accept:
        return offers[0]
    ranges = _parse_accept(accept)
    best: str | None = None
    best_q = 0.0
    for offer in offers:
        q = _quality(offer, ranges)
        if q > best_q:
            best, best_q = offer, q
    return best


def _stack(exc: BaseException | None) -> str | None:
    if exc is None:
        return None
    return "".join(traceback.format_exception(exc))


def response_from_http_error(
    request: Request,
    error: HTTPError,
    *,
    prefer_json: bool = True,
    expose_errors: bool = False,
    exc: BaseException | None = None,
) -> Response:
    """Build the default error response for *error*.

    ``exc`` is the exception that actually occurred when *error* wraps an
    unexpected failure; its traceback is shown only when ``expose_errors``
    is on. For an ``HTTPError`` raised directly, the traceback is shown
    only when the error was created with ``expose=True``.
    """
    status = error.status
    text = status_text(status)
    if error.exposes_detail or expose_errors:
        message = error.detail or text
    else:
        message = text

    stack: str | None = None
    if exc is not None and exc is not error:
        if expose_errors:
            stack = _stack(exc)
    elif error.expose or expose_errors:
        stack = _stack(error)

    offers = ("application/json", "text/html") if prefer_json else ("text/html", "application/json")
    match preferred_media_type(request.accept, offers):
        case "application/json":
            payload: dict[str, object] = {
                "status": status,
                "statusText": text,
                "message": message,
            }
            if stack:
                payload["stack"] = stack
            body = json_module.dumps(payload, separators=(",", ":"))
            content_type = JSON
        case "text/html":
            body = _error_template.render(
                {"status": status, "status_text": text, "message": message, "stack": stack}
            )
            content_type = HTML
        case _:
            body = f"{text} - {status}\n{message}\n"
            if stack:
                body = f"{body}\n{stack}"
            content_type = TEXT

    return Response(body=body, status=status, content_type=content_type).with_headers(
        error.headers
    )


def error_from_exception(exc: BaseException) -> HTTPError:
    """The ``HTTPError`` describing *exc*: itself, or a 500 wrapping it.

    The wrapped detail is only shown when ``expose_errors`` is on.
    """
    if isinstance(exc, HTTPError):
        return exc
    return HTTPError(status=500, detail=str(exc) or type(exc).__name__)
