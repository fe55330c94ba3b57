import dataclasses

import pytest

from ginkit.errors import Error, ErrorMsgs, ErrorType


def test_error():
    base = ValueError("test error")
    err = Error(base, ErrorType.PRIVATE)
    assert str(err) == str(base)
    assert err.to_json() == {"error": "test error"}

    assert err.set_type(ErrorType.PUBLIC) is err
    assert err.type == ErrorType.PUBLIC

    assert err.set_meta("some data") is err
    assert err.meta == "some data"
    assert err.to_json() == {"error": "test error", "meta": "some data"}
    assert err.marshal_json() == '{"error":"test error","meta":"some data"}'

    err.set_meta({"status": "200", "data": "some data"})
    assert err.to_json() == {"error": "test error", "status": "200", "data": "some data"}

    err.set_meta({"error": "custom error", "status": "200", "data": "some data"})
    assert err.to_json() == {"error": "custom error", "status": "200", "data": "some data"}

    @dataclasses.dataclass
    class CustomError:
        status: str
        data: str

    err.set_meta(CustomError(status="200", data="other data"))
    assert err.to_json() == CustomError(status="200", data="other data")


def test_error_slice():
    errs = ErrorMsgs(
        [
            Error(ValueError("first"), ErrorType.PRIVATE),
            Error(ValueError("second"), ErrorType.PRIVATE, "some data"),
            Error(ValueError("third"), ErrorType.PUBLIC, {"status": "400"}),
        ]
    )

    assert errs.by_type(ErrorType.ANY) == errs
    assert str(errs.last()) == "third"
    assert errs.errors() == ["first", "second", "third"]
    assert errs.by_type(ErrorType.PUBLIC).errors() == ["third"]
    assert errs.by_type(ErrorType.PRIVATE).errors() == ["first", "second"]
    assert errs.by_type(ErrorType.PUBLIC | ErrorType.PRIVATE).errors() == ["first", "second", "third"]
    assert len(errs.by_type(ErrorType.BIND)) == 0
    assert str(errs.by_type(ErrorType.BIND)) == ""

    assert str(errs) == (
        "Error #01: first\n"
        "Error #02: second\n"
        "     Meta: some data\n"
        "Error #03: third\n"
        "     Meta: map[status:400]\n"
    )
    assert errs.to_json() == [
        {"error": "first"},
        {"error": "second", "meta": "some data"},
        {"error": "third", "status": "400"},
    ]
    assert errs.marshal_json() == (
        '[{"error":"first"},{"error":"second","meta":"some data"},'
        '{"error":"third","status":"400"}]'
    )

    errs = ErrorMsgs([Error(ValueError("first"), ErrorType.PRIVATE)])
    assert errs.to_json() == {"error": "first"}
    assert errs.marshal_json() == '{"error":"first"}'

    errs = ErrorMsgs()
    assert errs.last() is None
    assert errs.to_json() is None
    assert str(errs) == ""


def _cause_chain(exc):
    chain = []
    while exc is not None:
        chain.append(exc)
        exc = exc.__cause__
    return chain


def test_error_unwrap():
    inner = KeyError("some error")
    wrapped = Error(inner, ErrorType.ANY)
    outer = RuntimeError("wrapped")
    outer.__cause__ = wrapped

    chain = _cause_chain(outer)
    assert inner in chain
    assert any(isinstance(item, KeyError) for item in chain)


def test_error_can_be_raised_and_caught():
    err = Error(ValueError("boom"), ErrorType.BIND)
    with pytest.raises(Error) as info:
        raise err
    assert info.value is err
    assert str(err) == "boom"
    assert err.is_type(ErrorType.BIND) is True
    assert err.is_type(ErrorType.PUBLIC) is False


def test_is_type():
    err = Error(ValueError("x"), ErrorType.PRIVATE)
    assert err.is_type(ErrorType.PRIVATE)
    assert not err.is_type(ErrorType.PUBLIC)
    assert err.is_type(ErrorType.ANY)


def test_marshal_escapes_html():
    err = Error(ValueError("<b>"))
    assert err.marshal_json() == '{"error":"\\u003cb\\u003e"}'


def test_nu_is_public_alias():
    err = Error(ValueError("x"), ErrorType.NU)
    assert err.is_type(ErrorType.PUBLIC) is True
    assert err.is_type(ErrorType.PRIVATE) is False
    assert err.is_type(ErrorType.ANY) is True
    assert int(ErrorType.ANY) == (1 << 64) - 1