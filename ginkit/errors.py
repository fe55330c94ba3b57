"""Error values attached to a request context and their collection type."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Mapping
from enum import IntFlag
from typing import Any


class ErrorType(IntFlag):
    """Bit flags classifying an :class:`Error`."""

    PRIVATE = 1 << 0
    PUBLIC = 1 << 1
    RENDER = 1 << 62
    BIND = 1 << 63
    ANY = (1 << 64) - 1
    NU = 2


def _json_default(value: Any) -> Any:
    if isinstance(value, Error):
        return value.to_json()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return list(value)
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


_HTML_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def _marshal(value: Any) -> str:
    """Serialise compactly with sorted keys and HTML-safe escaping."""
    text = json.dumps(
        value,
        default=_json_default,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    for raw, escaped in _HTML_ESCAPES:
        text = text.replace(raw, escaped)
    return text


def _format_value(value: Any) -> str:
    """Render a value the way a generic ``%v`` verb prints it."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Mapping):
        pairs = sorted(value.items(), key=lambda item: str(item[0]))
        inner = " ".join(f"{_format_value(k)}:{_format_value(v)}" for k, v in pairs)
        return f"map[{inner}]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_value(item) for item in value) + "]"
    return str(value)


class Error(Exception):
    """An error wrapped with a type and optional metadata."""

    def __init__(self, err: Any, type: ErrorType | int = ErrorType.PRIVATE, meta: Any = None) -> None:
        super().__init__(err)
        self.err = err
        self.type = ErrorType(type)
        self.meta = meta
        if isinstance(err, BaseException):
            self.__cause__ = err

    def set_type(self, flags: ErrorType | int) -> Error:
        """Set the error type and return the error itself."""
        self.type = ErrorType(flags)
        return self

    def set_meta(self, data: Any) -> Error:
        """Set the metadata and return the error itself."""
        self.meta = data
        return self

    def to_json(self) -> Any:
        """Return a JSON-ready representation of the error."""
        meta = self.meta
        data: dict[str, Any] = {}
        if meta is not None:
            if dataclasses.is_dataclass(meta) and not isinstance(meta, type):
                return meta
            if isinstance(meta, Mapping):
                data = {str(key): value for key, value in meta.items()}
            else:
                data["meta"] = meta
        data.setdefault("error", str(self))
        return data

    def marshal_json(self) -> str:
        """Serialise :meth:`to_json` to a JSON string."""
        return _marshal(self.to_json())

    def is_type(self, flags: ErrorType | int) -> bool:
        """Return True if any of ``flags`` is set on this error."""
        return (int(self.type) & int(flags)) > 0

    def __str__(self) -> str:
        return str(self.err)


class ErrorMsgs(list):
    """A list of :class:`Error` values collected during a request."""

    def by_type(self, typ: ErrorType | int) -> ErrorMsgs:
        """Return the errors whose type shares a bit with ``typ``."""
        if not self:
            return ErrorMsgs()
        if int(typ) == int(ErrorType.ANY):
            return self
        return ErrorMsgs(msg for msg in self if msg.is_type(typ))

    def last(self) -> Error | None:
        """Return the last error, or None when empty."""
        return self[-1] if self else None

    def errors(self) -> list[str]:
        """Return the message of every error."""
        return [str(msg) for msg in self]

    def to_json(self) -> Any:
        """Return None, a single JSON object, or a list of them."""
        if not self:
            return None
        if len(self) == 1:
            return self[0].to_json()
        return [msg.to_json() for msg in self]

    def marshal_json(self) -> str:
        """Serialise :meth:`to_json` to a JSON string."""
        return _marshal(self.to_json())

    def __str__(self) -> str:
        parts = []
        for number, msg in enumerate(self, 1):
            parts.append(f"Error #{number:02d}: {_format_value(msg.err)}\n")
            if msg.meta is not None:
                parts.append(f"     Meta: {_format_value(msg.meta)}\n")
        return "".join(parts)