"""HTTP request, header and response primitives used by the request context."""

from __future__ import annotations

import io
import ipaddress
import posixpath
import re
import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, BinaryIO
from urllib.parse import unquote_plus, urlsplit

from .debug import debug_print

DEFAULT_MAX_MEMORY = 32 << 20
_MAX_FORM_SIZE = 10 << 20
_FORM_METHODS = frozenset({"POST", "PUT", "PATCH"})
_TOKEN_SEPARATORS = frozenset('()<>@,;:\\"/[]?={} \t')
_PARAM_RE = re.compile(r';\s*([^\s=;]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^;]*)')
_DOMAIN_LABEL_RE = re.compile(r"^[A-Za-z0-9_](?:[A-Za-z0-9_-]*[A-Za-z0-9_])?$")


class NoCookieError(LookupError):
    """Raised when a named cookie is not present in a request."""

    def __init__(self, name: str = "") -> None:
        super().__init__("http: named cookie not present")
        self.name = name


class NotMultipartError(ValueError):
    """Raised when a request body is not multipart/form-data."""

    def __init__(self) -> None:
        super().__init__("request Content-Type isn't multipart/form-data")


class SameSite(IntEnum):
    """The SameSite attribute of a cookie."""

    DEFAULT = 1
    LAX = 2
    STRICT = 3
    NONE = 4


def _is_token(text: str) -> bool:
    return bool(text) and all(32 < ord(ch) < 127 and ch not in _TOKEN_SEPARATORS for ch in text)


def _canonical_key(key: str) -> str:
    if not _is_token(key):
        return key
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


def _parse_media_type(value: str) -> tuple[str, dict[str, str]]:
    media, _, rest = value.partition(";")
    params: dict[str, str] = {}
    for match in _PARAM_RE.finditer(";" + rest):
        raw = match.group(2).strip()
        if len(raw) >= 2 and raw[0] == raw[-1] == '"':
            raw = re.sub(r"\\(.)", r"\1", raw[1:-1])
        params.setdefault(match.group(1).lower(), raw)
    return media.strip().lower(), params


def _parse_query(raw: str) -> dict[str, list[str]]:
    values: dict[str, list[str]] = {}
    for segment in raw.split("&"):
        if not segment or ";" in segment:
            continue
        key, _, value = segment.partition("=")
        values.setdefault(unquote_plus(key), []).append(unquote_plus(value))
    return values


class Headers:
    """A case-insensitive, multi-valued collection of header fields."""

    def __init__(self, items: Headers | Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None) -> None:
        self._values: dict[str, list[str]] = {}
        if items is None:
            return
        if isinstance(items, Headers):
            pairs: Iterable[tuple[str, Any]] = items.items()
        elif isinstance(items, Mapping):
            pairs = items.items()
        else:
            pairs = items
        for key, value in pairs:
            if isinstance(value, (list, tuple)):
                for item in value:
                    self.add(key, item)
            else:
                self.add(key, value)

    def get(self, key: str) -> str:
        """Return the first value for ``key``, or an empty string."""
        values = self._values.get(_canonical_key(key))
        return values[0] if values else ""

    def get_all(self, key: str) -> list[str]:
        """Return every value for ``key``."""
        return list(self._values.get(_canonical_key(key), ()))

    def set(self, key: str, value: str) -> None:
        """Replace all values for ``key`` with ``value``."""
        self._values[_canonical_key(key)] = [str(value)]

    def add(self, key: str, value: str) -> None:
        """Append ``value`` to the values for ``key``."""
        self._values.setdefault(_canonical_key(key), []).append(str(value))

    def delete(self, key: str) -> None:
        """Remove every value for ``key``."""
        self._values.pop(_canonical_key(key), None)

    def items(self) -> Iterator[tuple[str, list[str]]]:
        """Yield each canonical key with its list of values."""
        for key, values in self._values.items():
            yield key, list(values)

    def copy(self) -> Headers:
        """Return an independent copy."""
        return Headers(self)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and _canonical_key(key) in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Headers({self._values!r})"


@dataclass
class UploadedFile:
    """A file received in a multipart form."""

    filename: str
    headers: Headers = field(default_factory=Headers)
    content: bytes | None = None

    @property
    def size(self) -> int:
        """The number of bytes in the file."""
        return len(self.content) if self.content is not None else 0

    def open(self) -> BinaryIO:
        """Return a readable binary stream over the file contents."""
        if self.content is None:
            raise FileNotFoundError(f"no content for uploaded file {self.filename!r}")
        return io.BytesIO(self.content)


@dataclass
class MultipartForm:
    """The parsed values and files of a multipart form."""

    values: dict[str, list[str]] = field(default_factory=dict)
    files: dict[str, list[UploadedFile]] = field(default_factory=dict)


def _strip_line_end(chunk: bytes, *, leading: bool) -> bytes:
    for ending in (b"\r\n", b"\n"):
        if leading and chunk.startswith(ending):
            return chunk[len(ending):]
        if not leading and chunk.endswith(ending):
            return chunk[: -len(ending)]
    if leading:
        raise ValueError("multipart: malformed boundary line")
    return chunk


def _split_part(chunk: bytes) -> tuple[Headers, bytes]:
    if chunk.startswith(b"\r\n"):
        return Headers(), chunk[2:]
    for separator in (b"\r\n\r\n", b"\n\n"):
        head, found, content = chunk.partition(separator)
        if found:
            break
    else:
        raise ValueError("multipart: malformed part")
    headers = Headers()
    for line in head.decode("utf-8", "replace").splitlines():
        key, colon, value = line.partition(":")
        if colon:
            headers.add(key.strip(), value.strip())
    return headers, content


def _read_multipart(data: bytes, boundary: str, max_memory: int) -> MultipartForm:
    delimiter = b"--" + boundary.encode("latin-1")
    chunks = data.split(delimiter)
    if len(chunks) < 2:
        raise ValueError("multipart: NextPart: EOF")
    form = MultipartForm()
    remaining = max_memory + _MAX_FORM_SIZE
    closed = False
    for chunk in chunks[1:]:
        if chunk.startswith(b"--"):
            closed = True
            break
        chunk = _strip_line_end(chunk.lstrip(b" \t"), leading=True)
        chunk = _strip_line_end(chunk, leading=False)
        headers, content = _split_part(chunk)
        media, params = _parse_media_type(headers.get("Content-Disposition"))
        name = params.get("name", "")
        if media != "form-data" or not name:
            continue
        filename = params.get("filename", "")
        if filename:
            filename = posixpath.basename(filename)
        if not filename:
            remaining -= len(content)
            if remaining < 0:
                raise ValueError("multipart: message too large")
            form.values.setdefault(name, []).append(content.decode("utf-8", "replace"))
        else:
            form.files.setdefault(name, []).append(UploadedFile(filename, headers, content))
    if not closed:
        raise ValueError("multipart: NextPart: EOF")
    return form


def _as_stream(body: Any) -> BinaryIO:
    if body is None:
        return io.BytesIO()
    if isinstance(body, str):
        return io.BytesIO(body.encode("utf-8"))
    if isinstance(body, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(body))
    if hasattr(body, "read"):
        return body
    raise TypeError(f"unsupported body type: {type(body).__name__}")


class Request:
    """An incoming HTTP request."""

    def __init__(
        self,
        method: str = "GET",
        url: str = "/",
        body: Any = None,
        headers: Headers | Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None,
        remote_addr: str = "",
    ) -> None:
        self.method = method or "GET"
        self.url = url
        parts = urlsplit(url)
        self.host = parts.netloc
        self.path = parts.path
        self.raw_query = parts.query
        self.headers = headers if isinstance(headers, Headers) else Headers(headers)
        self.remote_addr = remote_addr
        self.body = _as_stream(body)
        self.multipart_form: MultipartForm | None = None
        self.context_values: dict[Any, Any] = {}
        self._post_form: dict[str, list[str]] | None = None

    def query(self) -> dict[str, list[str]]:
        """Parse and return the URL query values."""
        return _parse_query(self.raw_query)

    def read_body(self) -> bytes:
        """Read and return the rest of the request body."""
        return self.body.read()

    def _parse_post_form(self) -> None:
        if self._post_form is not None:
            return
        form: dict[str, list[str]] = {}
        self._post_form = form
        if self.method not in _FORM_METHODS:
            return
        media, _ = _parse_media_type(self.headers.get("Content-Type") or "application/octet-stream")
        if media == "application/x-www-form-urlencoded":
            data = self.body.read(_MAX_FORM_SIZE + 1)
            if len(data) > _MAX_FORM_SIZE:
                raise ValueError("http: POST too large")
            form.update(_parse_query(data.decode("utf-8", "replace")))

    def _multipart_boundary(self) -> str:
        content_type = self.headers.get("Content-Type")
        if not content_type:
            raise NotMultipartError()
        media, params = _parse_media_type(content_type)
        if media != "multipart/form-data":
            raise NotMultipartError()
        boundary = params.get("boundary", "")
        if not boundary:
            raise ValueError("no multipart boundary param in Content-Type")
        return boundary

    def parse_multipart_form(self, max_memory: int = DEFAULT_MAX_MEMORY) -> MultipartForm:
        """Parse a multipart/form-data body once and return the form."""
        self._parse_post_form()
        if self.multipart_form is not None:
            return self.multipart_form
        boundary = self._multipart_boundary()
        form = _read_multipart(self.body.read(), boundary, max_memory)
        assert self._post_form is not None
        for key, values in form.values.items():
            self._post_form.setdefault(key, []).extend(values)
        self.multipart_form = form
        return form

    def post_form(self, max_memory: int = DEFAULT_MAX_MEMORY) -> dict[str, list[str]]:
        """Return the body form values from an urlencoded or multipart body."""
        try:
            self.parse_multipart_form(max_memory)
        except NotMultipartError:
            pass
        self._parse_post_form()
        assert self._post_form is not None
        return self._post_form

    def form_file(self, name: str) -> UploadedFile:
        """Return the first uploaded file for the form key ``name``."""
        if self.multipart_form is None:
            self.parse_multipart_form(DEFAULT_MAX_MEMORY)
        assert self.multipart_form is not None
        files = self.multipart_form.files.get(name)
        if not files:
            raise LookupError("http: no such file")
        return files[0]

    def cookie(self, name: str) -> str:
        """Return the raw value of the named request cookie."""
        for line in self.headers.get_all("Cookie"):
            for part in line.split(";"):
                part = part.strip()
                if not part:
                    continue
                key, _, value = part.partition("=")
                if key != name or not _is_token(key):
                    continue
                if len(value) > 1 and value[0] == value[-1] == '"':
                    value = value[1:-1]
                if all(_valid_cookie_value_char(ch) for ch in value):
                    return value
        raise NoCookieError(name)


def _valid_cookie_value_char(ch: str) -> bool:
    return 0x20 <= ord(ch) < 0x7F and ch not in '";\\'


def _sanitize_cookie_value(value: str) -> str:
    value = "".join(ch for ch in value if _valid_cookie_value_char(ch))
    if " " in value or "," in value:
        return f'"{value}"'
    return value


def _sanitize_cookie_path(path: str) -> str:
    return "".join(ch for ch in path if 0x20 <= ord(ch) < 0x7F and ch != ";")


def _valid_cookie_domain(domain: str) -> bool:
    if not domain:
        return False
    try:
        ipaddress.IPv4Address(domain)
        return True
    except ValueError:
        pass
    if domain.startswith("."):
        domain = domain[1:]
    if not domain or len(domain) > 255:
        return False
    labels = domain.split(".")
    if not all(len(label) <= 63 and _DOMAIN_LABEL_RE.match(label) for label in labels):
        return False
    return any(ch.isalpha() or ch == "_" for ch in domain)


class ResponseWriter:
    """An in-memory response that records status, headers and body."""

    def __init__(self) -> None:
        self.headers = Headers()
        self.status = 200
        self.size = -1
        self.body = bytearray()
        self.sent_headers: Headers | None = None
        self.flushed = False
        self.client_gone = threading.Event()

    def write_header(self, code: int) -> None:
        """Set the status code unless the headers were already sent."""
        if code > 0 and self.status != code:
            if self.written():
                debug_print(
                    "[WARNING] Headers were already written. Wanted to override status code %d with %d",
                    self.status,
                    code,
                )
                return
            self.status = code

    def write_header_now(self) -> None:
        """Send the status and a snapshot of the headers if not yet sent."""
        if not self.written():
            self.size = 0
            self.sent_headers = self.headers.copy()

    def write(self, data: bytes | str) -> int:
        """Append ``data`` to the body and return the number of bytes written."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.write_header_now()
        self.body.extend(data)
        self.size += len(data)
        return len(data)

    def written(self) -> bool:
        """True once the headers have been sent."""
        return self.size != -1

    def flush(self) -> None:
        """Send the headers and mark buffered output as flushed."""
        self.write_header_now()
        self.flushed = True

    def set_cookie(
        self,
        name: str,
        value: str,
        max_age: int = 0,
        path: str = "",
        domain: str = "",
        same_site: SameSite | None = None,
        secure: bool = False,
        http_only: bool = False,
    ) -> None:
        """Add a Set-Cookie header; cookies with an invalid name are dropped."""
        if not _is_token(name):
            return
        parts = [f"{name}={_sanitize_cookie_value(value)}"]
        if path:
            parts.append(f"Path={_sanitize_cookie_path(path)}")
        if domain:
            if _valid_cookie_domain(domain):
                parts.append(f"Domain={domain.lstrip('.') if domain.startswith('.') else domain}")
            else:
                debug_print("invalid cookie Domain %r; dropping domain attribute", domain)
        if max_age > 0:
            parts.append(f"Max-Age={max_age}")
        elif max_age < 0:
            parts.append("Max-Age=0")
        if http_only:
            parts.append("HttpOnly")
        if secure:
            parts.append("Secure")
        if same_site is SameSite.NONE:
            parts.append("SameSite=None")
        elif same_site is SameSite.LAX:
            parts.append("SameSite=Lax")
        elif same_site is SameSite.STRICT:
            parts.append("SameSite=Strict")
        self.headers.add("Set-Cookie", "; ".join(parts))


def body_allowed_for_status(status: int) -> bool:
    """Return whether a response with ``status`` may carry a body."""
    if 100 <= status <= 199:
        return False
    return status not in (204, 304)