"""Content coercion: maps handler return values to responses.

isinstance-based dispatch, no magic. The same rules serve route handlers
and status handlers; the only difference is the status a raw body gets.
"""

import json as json_module
import re
from collections.abc import AsyncIterator, Iterator, Mapping
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from perch._internal.invoke import invoke
from perch.http.headers import Headers
from perch.http.response import AnyResponse, Redirect, Response, StreamingResponse

if TYPE_CHECKING:
    from perch.http.request import Request

_HTML_LIKE = re.compile(r"^\s*<(?:!DOCTYPE|html|body)", re.IGNORECASE)
_JSON_LIKE = re.compile(r'^\s*["{\[]')

HTML = "text/html; charset=UTF-8"
JSON = "application/json; charset=UTF-8"
TEXT = "text/plain; charset=UTF-8"


class _Declined:
    """Marker a route handler returns to pass the request to later routes."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "DECLINED"

    def __bool__(self) -> bool:
        return False


DECLINED = _Declined()


class Serializer(Protocol):
    """Route option controlling how non-string values become JSON bodies.

    An object may also define ``to_response(value, params, request)``
    returning a ``Response``; when present it is used instead of
    ``stringify``. Either method may be sync or async.
    """

    def stringify(self, value: Any) -> str: ...


@runtime_checkable
class Deserializer(Protocol):
    """Route option parsing a request body: ``parse(text, params, request)``."""

    def parse(self, text: str, params: Mapping[str, str], request: Any) -> Any: ...


def is_html_like(value: str) -> bool:
    """True if *value* starts (after whitespace) with ``<!DOCTYPE``, ``<html`` or ``<body``."""
    return _HTML_LIKE.match(value) is not None


def is_json_like(value: str) -> bool:
    """True if *value* starts (after whitespace) with ``"``, ``{`` or ``[``."""
    return _JSON_LIKE.match(value) is not None


def sniff_content_type(value: str) -> str:
    if is_html_like(value):
        return HTML
    if is_json_like(value):
        return JSON
    return TEXT


def _is_chunk_stream(value: Any) -> bool:
    if isinstance(value, (str, bytes, bytearray, memoryview, Mapping, list, tuple)):
        return False
    return isinstance(value, (Iterator, AsyncIterator))


async def _serialize(
    value: Any,
    serializer: Any,
    params: Mapping[str, str],
    request: "Request | None",
) -> Response | str:
    if serializer is not None:
        to_response = getattr(serializer, "to_response", None)
        if to_response is not None:
            return await invoke(to_response, value, params, request)
        stringify = getattr(serializer, "stringify", None)
        if stringify is not None:
            return await invoke(stringify, value)
    return json_module.dumps(value, separators=(",", ":"), default=str)


async def coerce_result(
    value: Any,
    headers: Headers,
    *,
    status: int = 200,
    serializer: Any = None,
    params: Mapping[str, str] | None = None,
    request: "Request | None" = None,
) -> AnyResponse | _Declined | None:
    """Convert a handler's return value into a response.

    Dispatch order:

    1. ``DECLINED``                 -> returned unchanged
    2. ``None``                     -> ``None`` (the caller decides)
    3. ``Response`` / streaming     -> header bag merged onto it
    4. ``Redirect``                 -> ``Location`` response
    5. ``str``                      -> sniffed HTML / JSON / plain text
    6. ``bytes`` and chunk streams  -> raw body, ``application/json``
    7. anything else                -> serializer, else ``json.dumps``

    Raw bodies get *status* and every header in *headers*.
    """
    match value:
        case _Declined() | None:
            return value
        case Response() | StreamingResponse():
            return value.merge_headers(headers)
        case Redirect():
            return (
                Response(status=value.status)
                .with_header("Location", value.url)
                .with_headers(value.headers)
                .merge_headers(headers)
            )
        case str():
            body: str | bytes = value
            content_type = sniff_content_type(value)
        case bytes() | bytearray() | memoryview():
            body = bytes(value)
            content_type = JSON
        case _ if _is_chunk_stream(value):
            content_type = headers.get("content-type") or JSON
            stream = StreamingResponse(chunks=value, status=status, content_type=content_type)
            return stream.merge_headers(headers)
        case _:
            serialized = await _serialize(value, serializer, params or {}, request)
            if isinstance(serialized, (Response, StreamingResponse)):
                return serialized.merge_headers(headers)
            body = serialized
            content_type = JSON

    # A content type the handler put in the header bag wins over sniffing
    content_type = headers.get("content-type") or content_type
    return Response(body=body, status=status, content_type=content_type).merge_headers(headers)
