"""Case-insensitive, multi-valued HTTP headers.

Implements ``MutableMapping[str, str]`` plus ``get_list`` / ``append``.
One ``Headers`` instance is the per-request response header bag: handlers,
status handlers and hooks write to it, and the router merges it onto the
final response. It is never shared between requests.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, MutableMapping

type HeaderInit = Mapping[str, str] | Iterable[tuple[str, str]] | None


class Headers(MutableMapping[str, str]):
    """Ordered, case-insensitive HTTP headers.

    ``__getitem__`` returns the first matching value.
    ``__setitem__`` replaces every existing value for the name.
    ``append`` adds a value (e.g. multiple ``Set-Cookie``).
    """

    __slots__ = ("_items",)

    def __init__(self, init: HeaderInit = None) -> None:
        self._items: list[tuple[str, str]] = []
        if init is None:
            return
        if isinstance(init, Headers):
            self._items = list(init._items)
        elif isinstance(init, Mapping):
            self._items = [(str(k), str(v)) for k, v in init.items()]
        else:
            self._items = [(str(k), str(v)) for k, v in init]

    def __getitem__(self, key: str) -> str:
        key_lower = key.lower()
        for name, value in self._items:
            if name.lower() == key_lower:
                return value
        raise KeyError(key)

    def __setitem__(self, key: str, value: str) -> None:
        key_lower = key.lower()
        self._items = [(n, v) for n, v in self._items if n.lower() != key_lower]
        self._items.append((key, value))

    def __delitem__(self, key: str) -> None:
        key_lower = key.lower()
        kept = [(n, v) for n, v in self._items if n.lower() != key_lower]
        if len(kept) == len(self._items):
            raise KeyError(key)
        self._items = kept

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        key_lower = key.lower()
        return any(name.lower() == key_lower for name, _ in self._items)

    def __iter__(self) -> Iterator[str]:
        seen: set[str] = set()
        for name, _ in self._items:
            key = name.lower()
            if key not in seen:
                seen.add(key)
                yield key

    def __len__(self) -> int:
        return len(set(self))

    def __repr__(self) -> str:
        items = ", ".join(f"{k!r}: {v!r}" for k, v in self._items)
        return f"Headers([{items}])"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self.multi_items() == other.multi_items()

    def get(self, key: str, default: str | None = None) -> str | None:  # type: ignore[override]
        """Return the first value for *key*, or *default* if missing."""
        try:
            return self[key]
        except KeyError:
            return default

    def get_list(self, key: str) -> list[str]:
        """Return all values for *key* (e.g. multiple ``Set-Cookie``)."""
        key_lower = key.lower()
        return [value for name, value in self._items if name.lower() == key_lower]

    def append(self, key: str, value: str) -> None:
        """Add a value without touching existing ones."""
        self._items.append((key, value))

    def multi_items(self) -> list[tuple[str, str]]:
        """Every ``(name, value)`` pair in insertion order, duplicates kept."""
        return list(self._items)

    def copy(self) -> Headers:
        return Headers(self)

    # -- ASGI interop --

    @classmethod
    def from_raw(cls, raw: Iterable[tuple[bytes, bytes]]) -> Headers:
        """Build from ASGI ``(name, value)`` byte pairs."""
        return cls((name.decode("latin-1"), value.decode("latin-1")) for name, value in raw)

    @property
    def raw(self) -> list[tuple[bytes, bytes]]:
        """Lower-cased byte pairs for ASGI ``http.response.start``."""
        return [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in self._items
        ]
