"""Status codes, reason phrases and the status range grammar.

A status filter entry is either an integer code or one of the range tags
below. ``"error"`` covers both client and server errors; ``"*"`` covers
everything.
"""

from http import HTTPStatus
from typing import Literal, get_args

type StatusRange = Literal[
    "*", "info", "success", "redirect", "client-error", "server-error", "error"
]

STATUS_RANGES: frozenset[str] = frozenset(get_args(StatusRange.__value__))

# Statuses whose responses never carry a body
BODYLESS_STATUSES = frozenset({204, 205, 304})


def is_informational(status: int) -> bool:
    return 100 <= status < 200


def is_success(status: int) -> bool:
    return 200 <= status < 300


def is_redirect(status: int) -> bool:
    return 300 <= status < 400


def is_client_error(status: int) -> bool:
    return 400 <= status < 500


def is_server_error(status: int) -> bool:
    return 500 <= status < 600


def is_error(status: int) -> bool:
    return 400 <= status < 600


_RANGE_CHECKS = {
    "info": is_informational,
    "success": is_success,
    "redirect": is_redirect,
    "client-error": is_client_error,
    "server-error": is_server_error,
    "error": is_error,
}


def in_range(status: int, tag: str) -> bool:
    """True if *status* falls inside the named range *tag*.

    Raises ``KeyError`` for an unknown tag.
    """
    if tag == "*":
        return True
    return _RANGE_CHECKS[tag](status)


def body_allowed(status: int) -> bool:
    """Whether an HTTP status code permits a response body."""
    return not (is_informational(status) or status in BODYLESS_STATUSES)


def status_text(status: int) -> str:
    """Reason phrase for *status*, or ``""`` for unregistered codes."""
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""
