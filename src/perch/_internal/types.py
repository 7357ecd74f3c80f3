"""Shared type aliases used across perch modules."""

from collections.abc import Callable
from typing import Any, TypeAlias

# Route handler: receives a Context, returns a Response, a body value or None
Handler: TypeAlias = Callable[..., Any]

# Status handler: receives (context, status, response)
StatusHandler: TypeAlias = Callable[..., Any]

# Route error handler: receives (request, exc), may return a Response
ErrorHandler: TypeAlias = Callable[..., Any]

# Lifecycle hook: receives one hook event dataclass
Hook: TypeAlias = Callable[..., Any]
