import io

import pytest

from ginkit import debug
from ginkit.http import (
    Headers,
    MultipartForm,
    NoCookieError,
    NotMultipartError,
    Request,
    ResponseWriter,
    SameSite,
    UploadedFile,
    body_allowed_for_status,
)

BOUNDARY = "--testboundary"


def _multipart(fields, files=(), boundary=BOUNDARY):
    out = bytearray()
    for name, value in fields:
        out += (
            f"--{boundary}\r\nContent-Disposition: form-data; name=\"{name}\"\r\n\r\n{value}\r\n"
        ).encode()
    for name, filename, content in files:
        out += (
            f"--{boundary}\r\nContent-Disposition: form-data; name=\"{name}\"; "
            f"filename=\"{filename}\"\r\nContent-Type: application/octet-stream\r\n\r\n"
        ).encode()
        out += content + b"\r\n"
    out += f"--{boundary}--\r\n".encode()
    return bytes(out)


def _multipart_request(fields, files=()):
    return Request(
        "POST",
        "/",
        _multipart(fields, files),
        {"Content-Type": f"multipart/form-data; boundary={BOUNDARY}"},
    )


def _sample_multipart_request():
    return _multipart_request(
        [
            ("foo", "bar"),
            ("bar", "10"),
            ("bar", "foo2"),
            ("array", "first"),
            ("array", "second"),
            ("id", ""),
            ("time_local", "31/12/2016 14:55"),
            ("names[a]", "thinkerou"),
            ("names[b]", "tianou"),
        ]
    )


def test_headers_canonical_keys():
    headers = Headers()
    headers.set("content-type", "text/plain")
    assert headers.get("CONTENT-TYPE") == "text/plain"
    assert list(headers) == ["Content-Type"]


def test_headers_add_get_all_delete():
    headers = Headers({"X-Custom": ["a", "b"]})
    headers.add("x-custom", "c")
    assert headers.get_all("X-Custom") == ["a", "b", "c"]
    assert headers.get("X-Custom") == "a"
    assert "x-custom" in headers
    headers.delete("X-CUSTOM")
    assert "X-Custom" not in headers
    assert headers.get("X-Custom") == ""


def test_headers_copy_is_independent():
    headers = Headers([("A", "1")])
    copied = headers.copy()
    headers.set("A", "2")
    assert copied.get("A") == "1"


def test_query_values():
    req = Request("GET", "http://example.com/?foo=bar&page=10&id=")
    assert req.query() == {"foo": ["bar"], "page": ["10"], "id": [""]}
    assert req.path == "/"


def test_query_arrays_and_brackets():
    req = Request("POST", "/?both=GET&id=main&id=omit&array[]=first&array[]=second&ids[a]=hi&ids[b]=3.14")
    query = req.query()
    assert query["id"] == ["main", "omit"]
    assert query["array[]"] == ["first", "second"]
    assert query["ids[a]"] == ["hi"]
    assert query["ids[b]"] == ["3.14"]


def test_query_decoding_and_semicolons():
    req = Request("GET", "/?a=x+y%21&bad;key=1&b")
    assert req.query() == {"a": ["x y!"], "b": [""]}


def test_post_form_urlencoded():
    req = Request(
        "POST",
        "/?both=GET&id=main",
        "foo=bar&page=11&both=&foo=second",
        {"Content-Type": "application/x-www-form-urlencoded"},
    )
    form = req.post_form()
    assert form == {"foo": ["bar", "second"], "page": ["11"], "both": [""]}
    assert "id" not in form
    assert req.query()["both"] == ["GET"]


def test_post_form_ignored_for_get_and_missing_type():
    assert Request("GET", "/", "foo=bar", {"Content-Type": "application/x-www-form-urlencoded"}).post_form() == {}
    assert Request("POST", "/?foo=bar", "foo=unused").post_form() == {}


def test_post_form_multipart():
    req = _sample_multipart_request()
    form = req.post_form()
    assert form["foo"] == ["bar"]
    assert form["bar"] == ["10", "foo2"]
    assert form["array"] == ["first", "second"]
    assert form["id"] == [""]
    assert form["names[a]"] == ["thinkerou"]
    assert form["names[b]"] == ["tianou"]
    assert req.query() == {}


def test_parse_multipart_form_returns_cached_form():
    req = _sample_multipart_request()
    first = req.parse_multipart_form()
    assert isinstance(first, MultipartForm)
    assert req.parse_multipart_form() is first
    assert first.values["time_local"] == ["31/12/2016 14:55"]


def test_parse_multipart_not_multipart():
    req = Request("POST", "/", "foo=bar", {"Content-Type": "application/x-www-form-urlencoded"})
    with pytest.raises(NotMultipartError):
        req.parse_multipart_form()


def test_parse_multipart_missing_boundary():
    req = Request("POST", "/", b"", {"Content-Type": "multipart/form-data"})
    with pytest.raises(ValueError, match="boundary"):
        req.parse_multipart_form()


def test_parse_multipart_empty_form():
    req = _multipart_request([])
    form = req.parse_multipart_form()
    assert form.values == {} and form.files == {}


def test_form_file():
    req = _multipart_request([("foo", "bar")], [("file", "test", b"test")])
    uploaded = req.form_file("file")
    assert uploaded.filename == "test"
    assert uploaded.size == 4
    with uploaded.open() as stream:
        assert stream.read() == b"test"
    assert req.post_form()["foo"] == ["bar"]


def test_form_file_missing():
    req = _multipart_request([("foo", "bar")])
    with pytest.raises(LookupError):
        req.form_file("file")


def test_uploaded_file_without_content_fails_to_open():
    with pytest.raises(FileNotFoundError):
        UploadedFile("file").open()


def test_read_body_consumes():
    req = Request("POST", "/", io.BytesIO(b"Fetch binary post data"))
    assert req.read_body() == b"Fetch binary post data"
    assert req.read_body() == b""


def test_cookie():
    req = Request("GET", "/get", headers={"Cookie": 'user=gin; other="quoted"'})
    assert req.cookie("user") == "gin"
    assert req.cookie("other") == "quoted"
    with pytest.raises(NoCookieError):
        req.cookie("nokey")


def test_set_cookie_format():
    writer = ResponseWriter()
    writer.set_cookie("user", "gin", 1, "/", "localhost", SameSite.LAX, True, True)
    assert (
        writer.headers.get("Set-Cookie")
        == "user=gin; Path=/; Domain=localhost; Max-Age=1; HttpOnly; Secure; SameSite=Lax"
    )


def test_set_cookie_variants():
    writer = ResponseWriter()
    writer.set_cookie("a", "x y", -1, "", ".example.com", SameSite.NONE)
    writer.set_cookie("bad name", "v")
    assert writer.headers.get_all("Set-Cookie") == ['a="x y"; Domain=example.com; Max-Age=0; SameSite=None']


def test_response_writer_status_flow():
    writer = ResponseWriter()
    assert writer.status == 200
    assert not writer.written()
    writer.write_header(404)
    assert writer.status == 404
    writer.write_header_now()
    assert writer.written()
    assert writer.size == 0
    assert writer.write("hello") == 5
    assert bytes(writer.body) == b"hello"
    assert writer.size == 5


def test_write_header_after_written_warns():
    out = io.StringIO()
    previous = debug.set_writers(out, out)
    debug.set_mode("debug")
    try:
        writer = ResponseWriter()
        writer.write(b"x")
        writer.write_header(500)
    finally:
        debug.set_mode("test")
        debug.set_writers(*previous)
    assert writer.status == 200
    assert out.getvalue() == (
        "[GIN-debug] [WARNING] Headers were already written. Wanted to override status code 200 with 500\n"
    )


def test_sent_headers_frozen():
    writer = ResponseWriter()
    writer.headers.set("X-Test", "original")
    writer.flush()
    writer.headers.set("X-Test", "overridden")
    assert writer.flushed
    assert writer.sent_headers.get("X-Test") == "original"


@pytest.mark.parametrize(
    "status,allowed",
    [(100, False), (102, False), (199, False), (200, True), (204, False), (304, False), (500, True)],
)
def test_body_allowed_for_status(status, allowed):
    assert body_allowed_for_status(status) is allowed