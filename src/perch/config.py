"""Router configuration.

RouterConfig is frozen: build one up front and pass it to the Router.
"""

from dataclasses import dataclass

from perch.errors import ConfigurationError

_LOG_LEVELS = frozenset({"debug", "info", "warning", "error", "critical"})
_LOG_FORMATS = frozenset({"text", "json"})


@dataclass(frozen=True, slots=True)
class RouterConfig:
    """Router configuration. Immutable after creation.

    All fields have sensible defaults. Override what you need::

        config = RouterConfig(expose_errors=True, drain_timeout=10.0)
    """

    # Listening address reported by transports
    hostname: str = "127.0.0.1"
    port: int = 8000
    secure: bool = False

    # Error responses
    prefer_json: bool = True  # JSON wins over HTML when Accept allows both
    expose_errors: bool = False  # show messages and tracebacks of unexpected errors
    method_not_allowed: bool = False  # answer 405 + Allow instead of 404 on method mismatch

    # Correlation header added to every delivered response (None disables)
    request_id_header: str | None = "X-Request-Id"

    # Shutdown (None = wait for every in-flight request, however long)
    drain_timeout: float | None = None

    # Logging (applied by perch.log.configure_from)
    log_level: str = "info"
    log_format: str = "text"

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            msg = f"port must be between 0 and 65535, got {self.port}"
            raise ConfigurationError(msg)
        if self.drain_timeout is not None and self.drain_timeout < 0:
            msg = f"drain_timeout must be non-negative, got {self.drain_timeout}"
            raise ConfigurationError(msg)
        if self.log_level.lower() not in _LOG_LEVELS:
            msg = f"Unknown log_level {self.log_level!r}. Expected one of {sorted(_LOG_LEVELS)}"
            raise ConfigurationError(msg)
        if self.log_format not in _LOG_FORMATS:
            msg = f"Unknown log_format {self.log_format!r}. Expected 'text' or 'json'"
            raise ConfigurationError(msg)
