"""Perch exception hierarchy.

Shared across Router, Route, status routes and transports so every module
raises and catches the same types.
"""

from dataclasses import dataclass


class PerchError(Exception):
    """Base for all perch-specific errors."""


class ConfigurationError(PerchError):
    """Raised when a route, status filter or config value is invalid.

    Surfaces at registration time, never while dispatching.
    """


@dataclass(frozen=True, slots=True)
class HTTPError(PerchError):
    """An error that maps directly to an HTTP status code.

    Raised by handlers (or the router itself). The router catches these at
    the per-request boundary and turns them into an error response.

    ``expose`` controls what the client sees: ``None`` exposes the detail
    for 4xx statuses only, ``True`` exposes the detail *and* the traceback,
    ``False`` hides both.
    """

    status: int
    detail: str = ""
    headers: tuple[tuple[str, str], ...] = ()
    expose: bool | None = None

    def __str__(self) -> str:
        if self.detail:
            return f"{self.status}: {self.detail}"
        return str(self.status)

    @property
    def exposes_detail(self) -> bool:
        """Whether ``detail`` may be shown to the client."""
        if self.expose is None:
            return self.status < 500
        return self.expose


class NotFound(HTTPError):  # noqa: N818
    """No route answered the request path (404)."""

    def __init__(self, detail: str = "Not Found") -> None:
        super().__init__(status=404, detail=detail)


class MethodNotAllowed(HTTPError):  # noqa: N818
    """A route matched the path but not the method (405).

    Includes an ``Allow`` header listing the valid methods.
    """

    def __init__(self, allowed: frozenset[str], detail: str = "") -> None:
        allow_value = ", ".join(sorted(allowed))
        default_detail = f"Method not allowed. Allowed methods: {allow_value}"
        super().__init__(
            status=405,
            detail=detail or default_detail,
            headers=(("Allow", allow_value),),
        )


class AlreadyRespondedError(PerchError, RuntimeError):
    """``respond()`` or ``error()`` was called on a settled request event.

    This is a logic error in a handler or hook (a double write), not a
    recoverable condition.
    """


class RequestAborted(PerchError):
    """The transport could not deliver a response (client went away)."""


class DrainTimeout(PerchError):
    """Shutdown gave up waiting for an in-flight request."""
