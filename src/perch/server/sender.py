"""ASGI response sending: translates perch responses to ASGI messages.

Handles both single-body responses and chunked streaming responses.
"""

import logging
from collections.abc import AsyncIterator

from perch._internal.asgi import Send
from perch.http.response import AnyResponse, Response, StreamingResponse
from perch.http.status import body_allowed

logger = logging.getLogger("perch.server")


def _raw_headers(response: AnyResponse) -> list[tuple[bytes, bytes]]:
    return [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in response.all_headers.multi_items()
    ]


def _encode_chunk(chunk: str | bytes) -> bytes:
    return chunk.encode("utf-8") if isinstance(chunk, str) else chunk


async def send_response(response: Response, send: Send, *, head: bool = False) -> None:
    """Translate a Response into ASGI send() calls."""
    raw_headers = _raw_headers(response)
    body = response.body_bytes if body_allowed(response.status) else b""
    if body_allowed(response.status):
        raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))

    await send(
        {
            "type": "http.response.start",
            "status": response.status,
            "headers": raw_headers,
        }
    )
    await send(
        {
            "type": "http.response.body",
            "body": b"" if head else body,
        }
    )


async def send_streaming_response(
    response: StreamingResponse, send: Send, *, head: bool = False
) -> None:
    """Send a streaming response chunk by chunk.

    Sends headers immediately, then each chunk as an ASGI body message
    with ``more_body=True``, then closes with an empty body. A failure
    mid-stream is logged and the stream is closed; the status line is
    already gone, so nothing else can be reported.
    """
    await send(
        {
            "type": "http.response.start",
            "status": response.status,
            "headers": _raw_headers(response),
        }
    )

    if not head and body_allowed(response.status):
        try:
            if isinstance(response.chunks, AsyncIterator):
                async for chunk in response.chunks:
                    if chunk:
                        await send(
                            {
                                "type": "http.response.body",
                                "body": _encode_chunk(chunk),
                                "more_body": True,
                            }
                        )
            else:
                for chunk in response.chunks:
                    if chunk:
                        await send(
                            {
                                "type": "http.response.body",
                                "body": _encode_chunk(chunk),
                                "more_body": True,
                            }
                        )
        except OSError:
            raise
        except Exception:
            logger.exception("Error while streaming response body")

    await send(
        {
            "type": "http.response.body",
            "body": b"",
            "more_body": False,
        }
    )


async def send_any(response: AnyResponse, send: Send, *, head: bool = False) -> None:
    """Send either kind of response."""
    if isinstance(response, StreamingResponse):
        await send_streaming_response(response, send, head=head)
    else:
        await send_response(response, send, head=head)
