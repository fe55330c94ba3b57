# ginkit

Building blocks for handling a single HTTP request in plain Python, with no
third-party dependencies.

## Modules

- **`ginkit.context`**: `Context` is passed through a chain of handlers. It
  gives access to request data (query values, urlencoded and multipart form
  values, uploaded files, cookies, headers, remote IP, content type,
  websocket detection), per-request key/value storage with typed getters
  (`get_string`, `get_int`, `get_float`, `get_time`, ...), route `Params`,
  flow control (`next`, `abort`, `abort_with_status`, `abort_with_error`),
  error collection, content negotiation (`negotiate_format`,
  `set_accepted`) and response output (`status`, `header`, `set_cookie`,
  `render`, `data`, `stream`, `file_attachment_header`). Decoding a request
  into an object goes through a binder you supply: `should_bind_with`,
  `must_bind_with` (answers 400 and aborts on failure) and
  `should_bind_body_with` (caches the body bytes for repeated use).
- **`ginkit.http`**: the `Request`, `ResponseWriter` and case-insensitive
  `Headers` types that the context works on, together with `UploadedFile`,
  `MultipartForm`, `SameSite`, `NoCookieError`, `NotMultipartError` and
  `body_allowed_for_status`. `ResponseWriter` keeps status, headers and
  body in memory.
- **`ginkit.errors`**: `Error`, the `ErrorType` flags and `ErrorMsgs`, a
  list of errors with filtering by type (`by_type`), `last`, `errors` and
  JSON output (`to_json`, `marshal_json`).
- **`ginkit.debug`**: the run `Mode` (`debug`, `release`, `test`; the
  initial mode is read from the `GINKIT_MODE` environment variable),
  `set_mode`, `is_debugging`, `set_writers`, `set_route_printer` and the
  `[GIN-debug]` output helpers, which write only in debug mode.
- **`ginkit.fs`**: `DirFS`, `OnlyFilesFS` and `dir_fs` for opening files
  beneath a root directory, with or without directory listings.

## Installation

```
pip install ginkit
```

## Example

```python
from ginkit.context import Context
from ginkit.http import Request, ResponseWriter

request = Request("GET", "/search?q=python&page=2")
writer = ResponseWriter()
ctx = Context(request, writer)

ctx.query("q")                      # "python"
ctx.default_query("lang", "en")     # "en"

ctx.set("user", "alice")
ctx.get_string("user")              # "alice"

ctx.data(200, "text/plain", b"hello")
bytes(writer.body)                  # b"hello"
```

Errors are collected on the context as handlers run:

```python
from ginkit.errors import ErrorType

ctx.error(ValueError("bad input")).set_type(ErrorType.PUBLIC)
str(ctx.errors)   # "Error #01: bad input\n"
```

Debug output appears only in debug mode:

```python
from ginkit.debug import Mode, set_mode, debug_print

set_mode(Mode.DEBUG)
debug_print("listening on %s", ":8080")   # [GIN-debug] listening on :8080
```

## What it does not do

- There is no router, engine or server: you build a `Request`, a
  `ResponseWriter` and a `Context` yourself and run handlers with
  `Context.next`.
- There are no ready-made JSON, XML, YAML, TOML or HTML renderers and no
  ready-made binders. `render` takes any object with `render(writer)` and
  `write_content_type(writer)`; the binding methods take any object with
  `bind(request, obj)` or `bind_body(body, obj)`.
- Files are not served to the client: `file_attachment_header` only sets
  the `Content-Disposition` header, and `ginkit.fs` only opens files.
- Nothing is sent over a network; the response stays in the
  `ResponseWriter`.

## Running the tests

```
pip install -e ".[test]"
pytest
```