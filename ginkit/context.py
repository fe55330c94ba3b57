"""The per-request context: flow control, metadata, input access and rendering."""

from __future__ import annotations

import os
import shutil
import threading
import warnings
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from urllib.parse import quote_plus, unquote_plus

from .debug import debug_print, name_of_function
from .errors import Error, ErrorMsgs, ErrorType
from .http import (
    DEFAULT_MAX_MEMORY,
    Request,
    ResponseWriter,
    SameSite,
    UploadedFile,
    body_allowed_for_status,
)

MIME_JSON = "application/json"
MIME_HTML = "text/html"
MIME_XML = "application/xml"
MIME_XML2 = "text/xml"
MIME_PLAIN = "text/plain"
MIME_POST_FORM = "application/x-www-form-urlencoded"
MIME_MULTIPART_POST_FORM = "multipart/form-data"
MIME_YAML = "application/x-yaml"
MIME_TOML = "application/toml"

BODY_BYTES_KEY = "_ginkit/bodybyteskey"
CONTEXT_KEY = "_ginkit/contextkey"

ABORT_INDEX = 127 >> 1

Handler = Callable[["Context"], Any]


class Renderer(Protocol):
    """Something that can write a response body."""

    def render(self, writer: ResponseWriter) -> None: ...

    def write_content_type(self, writer: ResponseWriter) -> None: ...


class Binding(Protocol):
    """Something that can decode a request into an object."""

    def bind(self, request: Request, obj: Any) -> Any: ...


class BodyBinding(Protocol):
    """Something that can decode raw body bytes into an object."""

    def bind_body(self, body: bytes, obj: Any) -> Any: ...


@dataclass(frozen=True)
class Param:
    """A single URL parameter: a key and its value."""

    key: str
    value: str


class Params(list):
    """An ordered list of URL parameters."""

    def get(self, name: str) -> str | None:
        """Return the value of the first parameter named ``name``, or None."""
        for param in self:
            if param.key == name:
                return param.value
        return None

    def by_name(self, name: str) -> str:
        """Return the value of the parameter named ``name``, or an empty string."""
        value = self.get(name)
        return "" if value is None else value


@dataclass
class Negotiate:
    """Data offered for each format during content negotiation."""

    offered: list[str] = field(default_factory=list)
    html_name: str = ""
    html_data: Any = None
    json_data: Any = None
    xml_data: Any = None
    yaml_data: Any = None
    data: Any = None
    toml_data: Any = None


@dataclass
class _DataRender:
    content_type: str
    data: bytes

    def write_content_type(self, writer: ResponseWriter) -> None:
        if "Content-Type" not in writer.headers:
            writer.headers.set("Content-Type", self.content_type)

    def render(self, writer: ResponseWriter) -> None:
        self.write_content_type(writer)
        writer.write(self.data)


def _find_error(err: Any) -> Error | None:
    seen: set[int] = set()
    current = err
    while current is not None and id(current) not in seen:
        if isinstance(current, Error):
            return current
        seen.add(id(current))
        current = getattr(current, "__cause__", None)
    return None


def _split_host_port(address: str) -> tuple[str, str]:
    if ":" not in address:
        raise ValueError(f"address {address}: missing port in address")
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        if end + 1 == len(address):
            raise ValueError(f"address {address}: missing port in address")
        if address[end + 1] != ":":
            raise ValueError(f"address {address}: missing port in address")
        host, port = address[1:end], address[end + 2 :]
        if "[" in host:
            raise ValueError(f"address {address}: unexpected '[' in address")
    else:
        index = address.rfind(":")
        host, port = address[:index], address[index + 1 :]
        if ":" in host:
            raise ValueError(f"address {address}: too many colons in address")
        if "[" in host or "]" in host:
            raise ValueError(f"address {address}: unexpected bracket in address")
    if "[" in port or "]" in port:
        raise ValueError(f"address {address}: unexpected bracket in address")
    return host, port


def _filter_flags(content: str) -> str:
    for index, char in enumerate(content):
        if char in " ;":
            return content[:index]
    return content


def _parse_accept(header: str) -> list[str]:
    accepted = []
    for part in header.split(","):
        index = part.find(";")
        if index > 0:
            part = part[:index]
        part = part.strip()
        if part:
            accepted.append(part)
    return accepted


def _accept_matches(accepted: str, offer: str) -> bool:
    for a, o in zip(accepted, offer):
        if a == "*" or o == "*":
            return True
        if a != o:
            return False
    return len(accepted) <= len(offer)


def _escape_quotes(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def _map_entries(values: Mapping[str, list[str]], key: str) -> dict[str, str] | None:
    entries: dict[str, str] = {}
    found = False
    for name, items in values.items():
        start = name.find("[")
        if start >= 1 and name[:start] == key:
            rest = name[start + 1 :]
            end = rest.find("]")
            if end >= 1:
                found = True
                entries[rest[:end]] = items[0]
    return entries if found else None


class Context:
    """State shared by the handlers of a single request."""

    def __init__(
        self,
        request: Request | None = None,
        writer: ResponseWriter | None = None,
        max_multipart_memory: int = DEFAULT_MAX_MEMORY,
        context_with_fallback: bool = False,
    ) -> None:
        self.request = request
        self._base_writer = writer if writer is not None else ResponseWriter()
        self.writer = self._base_writer
        self.max_multipart_memory = max_multipart_memory
        self.context_with_fallback = context_with_fallback
        self._lock = threading.RLock()
        self.params = Params()
        self.handlers: list[Handler] = []
        self._index = -1
        self._full_path = ""
        self.keys: dict[str, Any] | None = None
        self.errors = ErrorMsgs()
        self.accepted: list[str] | None = None
        self._query_cache: dict[str, list[str]] | None = None
        self._form_cache: dict[str, list[str]] | None = None
        self._same_site: SameSite | None = None

    # creation

    def reset(self) -> None:
        """Return the context to its initial state for reuse."""
        self.writer = self._base_writer
        self.params = Params()
        self.handlers = []
        self._index = -1
        self._full_path = ""
        self.keys = None
        self.errors = ErrorMsgs()
        self.accepted = None
        self._query_cache = None
        self._form_cache = None
        self._same_site = None

    def copy(self) -> Context:
        """Return a detached copy that is safe to use outside the request."""
        duplicate = Context(self.request, None, self.max_multipart_memory, self.context_with_fallback)
        duplicate._index = ABORT_INDEX
        duplicate.keys = dict(self.items())
        duplicate.params = Params(self.params)
        return duplicate

    def handler_name(self) -> str:
        """Return the qualified name of the main (last) handler."""
        return name_of_function(self.handler())

    def handler_names(self) -> list[str]:
        """Return the qualified names of all handlers in order."""
        return [name_of_function(handler) for handler in self.handlers]

    def handler(self) -> Handler | None:
        """Return the main (last) handler, or None."""
        return self.handlers[-1] if self.handlers else None

    def full_path(self) -> str:
        """Return the matched route path, or an empty string."""
        return self._full_path

    # flow control

    def next(self) -> None:
        """Run the pending handlers of the chain."""
        self._index += 1
        while self._index < len(self.handlers):
            self.handlers[self._index](self)
            self._index += 1

    def is_aborted(self) -> bool:
        """True when the handler chain was aborted."""
        return self._index >= ABORT_INDEX

    def abort(self) -> None:
        """Stop the remaining handlers from running."""
        self._index = ABORT_INDEX

    def abort_with_status(self, code: int) -> None:
        """Abort and send the headers with ``code``."""
        self.status(code)
        self.writer.write_header_now()
        self.abort()

    def abort_with_error(self, code: int, err: Any) -> Error:
        """Abort with ``code`` and record ``err``."""
        self.abort_with_status(code)
        return self.error(err)

    # errors

    def error(self, err: Any) -> Error:
        """Attach an error to the context and return it as an :class:`Error`."""
        if err is None:
            raise ValueError("err is nil")
        parsed = _find_error(err)
        if parsed is None:
            parsed = Error(err, ErrorType.PRIVATE)
        self.errors.append(parsed)
        return parsed

    # metadata

    def set(self, key: str, value: Any) -> None:
        """Store a value for this request."""
        with self._lock:
            if self.keys is None:
                self.keys = {}
            self.keys[key] = value

    def get(self, key: str) -> Any:
        """Return the stored value for ``key``, or None."""
        with self._lock:
            return None if self.keys is None else self.keys.get(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return self.keys is not None and key in self.keys

    def items(self) -> Iterator[tuple[str, Any]]:
        """Iterate over a snapshot of the stored key/value pairs."""
        with self._lock:
            snapshot = list(self.keys.items()) if self.keys else []
        return iter(snapshot)

    def must_get(self, key: str) -> Any:
        """Return the stored value for ``key``; raise KeyError if absent."""
        with self._lock:
            if self.keys is not None and key in self.keys:
                return self.keys[key]
        raise KeyError(f'Key "{key}" does not exist')

    def get_string(self, key: str) -> str:
        """Return the value as a string, or an empty string."""
        value = self.get(key)
        return value if isinstance(value, str) else ""

    def get_bool(self, key: str) -> bool:
        """Return the value as a bool, or False."""
        value = self.get(key)
        return value if isinstance(value, bool) else False

    def get_int(self, key: str) -> int:
        """Return the value as an int, or 0."""
        value = self.get(key)
        return value if isinstance(value, int) and not isinstance(value, bool) else 0

    def get_float(self, key: str) -> float:
        """Return the value as a float, or 0.0."""
        value = self.get(key)
        return value if isinstance(value, float) else 0.0

    def get_time(self, key: str) -> datetime | None:
        """Return the value as a datetime, or None."""
        value = self.get(key)
        return value if isinstance(value, datetime) else None

    def get_duration(self, key: str) -> timedelta:
        """Return the value as a timedelta, or a zero duration."""
        value = self.get(key)
        return value if isinstance(value, timedelta) else timedelta(0)

    def get_string_list(self, key: str) -> list[str]:
        """Return the value as a list of strings, or an empty list."""
        value = self.get(key)
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            return value
        return []

    def get_string_map(self, key: str) -> dict[str, Any]:
        """Return the value as a string-keyed dict, or an empty dict."""
        value = self.get(key)
        if isinstance(value, dict) and all(isinstance(item, str) for item in value):
            return value
        return {}

    # input

    def param(self, key: str) -> str:
        """Return the URL parameter ``key``, or an empty string."""
        return self.params.by_name(key)

    def add_param(self, key: str, value: str) -> None:
        """Append a URL parameter."""
        self.params.append(Param(key, value))

    def _query_values(self) -> dict[str, list[str]]:
        if self._query_cache is None:
            self._query_cache = self.request.query() if self.request is not None else {}
        return self._query_cache

    def query(self, key: str) -> str:
        """Return the first query value for ``key``, or an empty string."""
        value = self.get_query(key)
        return "" if value is None else value

    def default_query(self, key: str, default: str) -> str:
        """Return the first query value for ``key``, or ``default``."""
        value = self.get_query(key)
        return default if value is None else value

    def get_query(self, key: str) -> str | None:
        """Return the first query value for ``key``, or None if absent."""
        values = self.get_query_array(key)
        return values[0] if values is not None else None

    def query_array(self, key: str) -> list[str]:
        """Return every query value for ``key``."""
        values = self.get_query_array(key)
        return values if values is not None else []

    def get_query_array(self, key: str) -> list[str] | None:
        """Return every query value for ``key``, or None if absent."""
        values = self._query_values().get(key)
        return list(values) if values is not None else None

    def query_map(self, key: str) -> dict[str, str]:
        """Return the ``key[name]`` query entries as a dict."""
        entries = self.get_query_map(key)
        return entries if entries is not None else {}

    def get_query_map(self, key: str) -> dict[str, str] | None:
        """Return the ``key[name]`` query entries, or None if there are none."""
        return _map_entries(self._query_values(), key)

    def _form_values(self) -> dict[str, list[str]]:
        if self._form_cache is None:
            if self.request is None:
                self._form_cache = {}
            else:
                try:
                    self._form_cache = self.request.post_form(self.max_multipart_memory)
                except (ValueError, OSError) as exc:
                    debug_print("error on parse multipart form array: %s", exc)
                    self._form_cache = {}
        return self._form_cache

    def post_form(self, key: str) -> str:
        """Return the first body form value for ``key``, or an empty string."""
        value = self.get_post_form(key)
        return "" if value is None else value

    def default_post_form(self, key: str, default: str) -> str:
        """Return the first body form value for ``key``, or ``default``."""
        value = self.get_post_form(key)
        return default if value is None else value

    def get_post_form(self, key: str) -> str | None:
        """Return the first body form value for ``key``, or None if absent."""
        values = self.get_post_form_array(key)
        return values[0] if values is not None else None

    def post_form_array(self, key: str) -> list[str]:
        """Return every body form value for ``key``."""
        values = self.get_post_form_array(key)
        return values if values is not None else []

    def get_post_form_array(self, key: str) -> list[str] | None:
        """Return every body form value for ``key``, or None if absent."""
        values = self._form_values().get(key)
        return list(values) if values is not None else None

    def post_form_map(self, key: str) -> dict[str, str]:
        """Return the ``key[name]`` body form entries as a dict."""
        entries = self.get_post_form_map(key)
        return entries if entries is not None else {}

    def get_post_form_map(self, key: str) -> dict[str, str] | None:
        """Return the ``key[name]`` body form entries, or None if there are none."""
        return _map_entries(self._form_values(), key)

    def _require_request(self) -> Request:
        if self.request is None:
            raise RuntimeError("context has no request")
        return self.request

    def form_file(self, name: str) -> UploadedFile:
        """Return the first uploaded file for the form key ``name``."""
        request = self._require_request()
        if request.multipart_form is None:
            request.parse_multipart_form(self.max_multipart_memory)
        return request.form_file(name)

    def save_uploaded_file(self, file: UploadedFile, dst: str | os.PathLike) -> None:
        """Write an uploaded file to ``dst``, creating parent directories."""
        with file.open() as source:
            parent = os.path.dirname(os.fspath(dst))
            if parent:
                os.makedirs(parent, mode=0o750, exist_ok=True)
            with open(dst, "wb") as out:
                shutil.copyfileobj(source, out)

    def should_bind_with(self, obj: Any, binder: Binding) -> Any:
        """Decode the request into ``obj`` with ``binder``."""
        return binder.bind(self.request, obj)

    def must_bind_with(self, obj: Any, binder: Binding) -> Any:
        """Like :meth:`should_bind_with`, but abort with 400 on failure."""
        try:
            return self.should_bind_with(obj, binder)
        except Exception as exc:
            self.abort_with_error(400, exc).set_type(ErrorType.BIND)
            raise

    def bind_with(self, obj: Any, binder: Binding) -> Any:
        """Deprecated alias of :meth:`must_bind_with`."""
        warnings.warn(
            "bind_with is deprecated; use must_bind_with to answer 400 on failure "
            "or should_bind_with to handle the error yourself",
            DeprecationWarning,
            stacklevel=2,
        )
        return self.must_bind_with(obj, binder)

    def should_bind_body_with(self, obj: Any, binder: BodyBinding) -> Any:
        """Decode the body with ``binder``, caching the bytes for later calls."""
        body = self.get(BODY_BYTES_KEY)
        if not isinstance(body, bytes):
            body = self._require_request().read_body()
            self.set(BODY_BYTES_KEY, body)
        return binder.bind_body(body, obj)

    def remote_ip(self) -> str:
        """Return the host part of the request's remote address, or an empty string."""
        request = self._require_request()
        try:
            host, _ = _split_host_port(request.remote_addr.strip())
        except ValueError:
            return ""
        return host

    def _request_header(self, key: str) -> str:
        return self.request.headers.get(key) if self.request is not None else ""

    def content_type(self) -> str:
        """Return the request Content-Type without parameters."""
        return _filter_flags(self._request_header("Content-Type"))

    def is_websocket(self) -> bool:
        """True when the request asks for a websocket upgrade."""
        return (
            "upgrade" in self._request_header("Connection").lower()
            and self._request_header("Upgrade").casefold() == "websocket"
        )

    # response

    def status(self, code: int) -> None:
        """Set the response status code."""
        self.writer.write_header(code)

    def header(self, key: str, value: str) -> None:
        """Set a response header; an empty value removes it."""
        if value == "":
            self.writer.headers.delete(key)
        else:
            self.writer.headers.set(key, value)

    def get_header(self, key: str) -> str:
        """Return a request header value."""
        return self._request_header(key)

    def get_raw_data(self) -> bytes:
        """Read and return the request body."""
        return self._require_request().read_body()

    def set_same_site(self, same_site: SameSite | None) -> None:
        """Set the SameSite attribute used by :meth:`set_cookie`."""
        self._same_site = same_site

    def set_cookie(
        self,
        name: str,
        value: str,
        max_age: int,
        path: str,
        domain: str,
        secure: bool,
        http_only: bool,
    ) -> None:
        """Add a Set-Cookie header with a query-escaped value."""
        self.writer.set_cookie(
            name,
            quote_plus(value),
            max_age,
            path or "/",
            domain,
            self._same_site,
            secure,
            http_only,
        )

    def cookie(self, name: str) -> str:
        """Return the unescaped value of a request cookie; raise NoCookieError if absent."""
        return unquote_plus(self._require_request().cookie(name))

    def render(self, code: int, renderer: Renderer) -> None:
        """Set the status and render the body, recording any render failure."""
        self.status(code)
        if not body_allowed_for_status(code):
            renderer.write_content_type(self.writer)
            self.writer.write_header_now()
            return
        try:
            renderer.render(self.writer)
        except Exception as exc:
            self.error(exc)
            self.abort()

    def data(self, code: int, content_type: str, data: bytes) -> None:
        """Write raw bytes with the given content type."""
        self.render(code, _DataRender(content_type, bytes(data)))

    def file_attachment_header(self, filename: str) -> None:
        """Set a Content-Disposition header offering ``filename`` as a download."""
        if filename.isascii():
            disposition = f'attachment; filename="{_escape_quotes(filename)}"'
        else:
            disposition = "attachment; filename*=UTF-8''" + quote_plus(filename)
        self.writer.headers.set("Content-Disposition", disposition)

    def stream(self, step: Callable[[ResponseWriter], bool]) -> bool:
        """Call ``step`` until it returns False; return True if the client went away."""
        writer = self.writer
        while True:
            if writer.client_gone.is_set():
                return True
            keep_open = step(writer)
            writer.flush()
            if not keep_open:
                return False

    # content negotiation

    def negotiate_format(self, *offered: str) -> str:
        """Return the first offered format acceptable to the client, or an empty string."""
        if not offered:
            raise ValueError("you must provide at least one offer")
        if self.accepted is None:
            self.accepted = _parse_accept(self._request_header("Accept"))
        if not self.accepted:
            return offered[0]
        for accepted in self.accepted:
            for offer in offered:
                if _accept_matches(accepted, offer):
                    return offer
        return ""

    def set_accepted(self, *formats: str) -> None:
        """Override the accepted formats."""
        self.accepted = list(formats)

    def _has_request_context(self) -> bool:
        return self.context_with_fallback and self.request is not None

    def value(self, key: Any) -> Any:
        """Look up ``key`` in the context, falling back to the request's values."""
        if isinstance(key, int) and not isinstance(key, bool) and key == 0:
            return self.request
        if key == CONTEXT_KEY:
            return self
        if isinstance(key, str) and key in self:
            return self.get(key)
        if not self._has_request_context():
            return None
        return self.request.context_values.get(key)