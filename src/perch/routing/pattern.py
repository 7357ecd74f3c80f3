"""Path pattern compilation.

Turns an author-supplied pattern such as ``/books/:id`` into a compiled
``PathMatcher``. Supported syntax:

    /books/:id            one segment, captured as ``id``
    /books/:id(\\d+)       one segment matching a custom regex
    /books/:id?           optional segment (its leading ``/`` too)
    /files/:path*         zero or more segments
    /files/:path+         one or more segments
    /static/*             unnamed wildcard for the rest of the path,
                          captured as ``"0"`` (then ``"1"``, ...)
    /raw/(\\d+)            unnamed regex group, also numbered

Matching looks at the pathname only. Captured values are percent-decoded;
a value that doesn't decode is returned raw.
"""

import re
from dataclasses import dataclass
from urllib.parse import unquote

from perch.errors import ConfigurationError

_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_SEGMENT = "[^/]+?"


@dataclass(frozen=True, slots=True)
class PathToken:
    """A parsed piece of a pattern: literal text or a capture."""

    literal: str = ""
    name: str | None = None
    regex: str = _SEGMENT
    modifier: str = ""  # "", "?", "*" or "+"
    prefix: str = ""  # "/" owned by an optional or repeated capture

    @property
    def is_capture(self) -> bool:
        return self.name is not None


def decode_component(text: str) -> str:
    """Percent-decode *text*, falling back to the raw value on bad input."""
    try:
        return unquote(text, errors="strict")
    except UnicodeDecodeError:
        return text


def _read_group(pattern: str, start: int) -> tuple[str, int]:
    """Read a balanced ``(...)`` regex group starting at ``pattern[start]``."""
    depth = 0
    i = start
    while i < len(pattern):
        char = pattern[i]
        if char == "\\":
            i += 2
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                body = pattern[start + 1 : i]
                if not body:
                    msg = f"Empty regex group at {start} in {pattern!r}"
                    raise ConfigurationError(msg)
                if body.startswith("?") and not body.startswith("?:"):
                    msg = f"Capturing or named groups are not allowed in {pattern!r}"
                    raise ConfigurationError(msg)
                return body, i + 1
        i += 1
    msg = f"Unbalanced '(' at {start} in {pattern!r}"
    raise ConfigurationError(msg)


def parse_pattern(pattern: str) -> list[PathToken]:
    """Parse a pattern string into literal and capture tokens.

    Examples::

        "/books"          -> [PathToken(literal="/books")]
        "/books/:id"      -> [PathToken(literal="/books"),
                              PathToken(name="id", prefix="/")]
        "/books/:id?"     -> [PathToken(literal="/books"),
                              PathToken(name="id", modifier="?", prefix="/")]
    """
    if not pattern.startswith("/") and pattern != "*":
        msg = f"Route pattern must start with '/': {pattern!r}"
        raise ConfigurationError(msg)

    tokens: list[PathToken] = []
    literal: list[str] = []
    unnamed = 0
    seen: set[str] = set()
    i = 0

    def flush() -> str:
        """Emit buffered literal text, handing back a trailing ``/`` as prefix."""
        text = "".join(literal)
        literal.clear()
        prefix = ""
        if text.endswith("/"):
            text, prefix = text[:-1], "/"
        if text:
            tokens.append(PathToken(literal=text))
        return prefix

    while i < len(pattern):
        char = pattern[i]

        if char == "\\" and i + 1 < len(pattern):
            literal.append(pattern[i + 1])
            i += 2
            continue

        if char in ":*(":
            if char == ":":
                match = _NAME.match(pattern, i + 1)
                if match is None:
                    msg = f"Missing parameter name at {i} in {pattern!r}"
                    raise ConfigurationError(msg)
                name = match.group()
                i = match.end()
                regex = _SEGMENT
                if i < len(pattern) and pattern[i] == "(":
                    regex, i = _read_group(pattern, i)
            elif char == "*":
                name = str(unnamed)
                unnamed += 1
                regex = ".*"
                i += 1
            else:
                regex, i = _read_group(pattern, i)
                name = str(unnamed)
                unnamed += 1

            if name in seen:
                msg = f"Duplicate parameter {name!r} in {pattern!r}"
                raise ConfigurationError(msg)
            seen.add(name)

            modifier = ""
            if char != "*" and i < len(pattern) and pattern[i] in "?*+":
                modifier = pattern[i]
                i += 1

            prefix = flush()
            tokens.append(PathToken(name=name, regex=regex, modifier=modifier, prefix=prefix))
            continue

        literal.append(char)
        i += 1

    text = "".join(literal)
    if text:
        tokens.append(PathToken(literal=text))
    return tokens


def _token_regex(token: PathToken) -> str:
    if not token.is_capture:
        return re.escape(token.literal)
    prefix = re.escape(token.prefix)
    body = token.regex
    if token.modifier in ("*", "+"):
        # Repeated captures span several segments joined by the prefix
        sep = prefix or "/"
        body = f"(?:{body})(?:{sep}(?:{body}))*"
    if token.regex == ".*" and token.prefix:
        # Bare wildcard after "/": the slash may be absent ("/static" matches)
        return f"(?:{prefix}({body}))?"
    if token.modifier in ("?", "*"):
        return f"(?:{prefix}({body}))?"
    return f"{prefix}({body})"


@dataclass(frozen=True, slots=True)
class PathMatcher:
    """A compiled path pattern.

    Pure and stateless after construction: ``match`` only reads the
    compiled regex, so one matcher serves every concurrent request.
    """

    pattern: str
    regex: re.Pattern[str]
    keys: tuple[str, ...]

    def match(self, pathname: str) -> dict[str, str] | None:
        """Return decoded parameters for *pathname*, or ``None`` if it doesn't match.

        Optional parameters that are absent are left out of the mapping.
        """
        found = self.regex.match(pathname)
        if found is None:
            return None
        params: dict[str, str] = {}
        for key, value in zip(self.keys, found.groups(), strict=True):
            if value is not None:
                params[key] = decode_component(value)
        return params


def compile_pattern(
    pattern: str,
    *,
    sensitive: bool = False,
    trailing: bool = True,
) -> PathMatcher:
    """Compile *pattern* into a ``PathMatcher``.

    Args:
        pattern: Route pattern, e.g. ``/books/:id``.
        sensitive: Match case-sensitively (default: case-insensitive).
        trailing: Accept an optional trailing ``/`` (default True).

    Raises:
        ConfigurationError: If the pattern is malformed.
    """
    if pattern == "*":
        pattern = "/*"
    tokens = parse_pattern(pattern)
    body = "".join(_token_regex(token) for token in tokens)
    if trailing and not pattern.endswith("/"):
        body += "/?"
    flags = 0 if sensitive else re.IGNORECASE
    try:
        regex = re.compile(f"^{body}$", flags)
    except re.error as exc:
        msg = f"Invalid route pattern {pattern!r}: {exc}"
        raise ConfigurationError(msg) from exc
    keys = tuple(token.name for token in tokens if token.name is not None)
    if regex.groups != len(keys):
        msg = f"Capturing groups are not allowed inside a parameter regex in {pattern!r}"
        raise ConfigurationError(msg)
    return PathMatcher(pattern=pattern, regex=regex, keys=keys)
