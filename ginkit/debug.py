"""Run mode and debug-only diagnostic output."""

from __future__ import annotations

import os
import platform
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, TextIO

MIN_PYTHON_MINOR = 10
MODE_ENV = "GINKIT_MODE"

RoutePrinter = Callable[[str, str, str, int], None]


class Mode(str, Enum):
    """The framework run mode."""

    DEBUG = "debug"
    RELEASE = "release"
    TEST = "test"


def _initial_mode() -> Mode:
    value = os.environ.get(MODE_ENV, "")
    try:
        return Mode(value) if value else Mode.DEBUG
    except ValueError:
        return Mode.DEBUG


@dataclass
class _State:
    mode: Mode
    out: TextIO | None = None
    err: TextIO | None = None
    route_printer: RoutePrinter | None = None


_state = _State(mode=_initial_mode())


def set_mode(mode: Mode | str) -> None:
    """Set the run mode; raise ValueError on an unknown mode."""
    try:
        _state.mode = Mode(mode)
    except ValueError:
        raise ValueError(f"mode unknown: {mode} (available mode: debug release test)") from None


def is_debugging() -> bool:
    """Return True when running in debug mode."""
    return _state.mode is Mode.DEBUG


def set_writers(out: TextIO | None, err: TextIO | None) -> tuple[TextIO | None, TextIO | None]:
    """Set the debug and error streams (None means stdout/stderr); return the previous pair."""
    previous = (_state.out, _state.err)
    _state.out, _state.err = out, err
    return previous


def set_route_printer(func: RoutePrinter | None) -> RoutePrinter | None:
    """Install a custom route printer (None restores the default); return the previous one."""
    previous = _state.route_printer
    _state.route_printer = func
    return previous


def _out() -> TextIO:
    return _state.out if _state.out is not None else sys.stdout


def _err() -> TextIO:
    return _state.err if _state.err is not None else sys.stderr


def name_of_function(func: Any) -> str:
    """Return the qualified name of a callable, or an empty string for None."""
    if func is None:
        return ""
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", None)
    if name is None:
        name = type(func).__qualname__
    module = getattr(func, "__module__", None)
    return f"{module}.{name}" if module else name


def debug_print(format: str, *args: Any) -> None:
    """Write a prefixed, newline-terminated message when debugging."""
    if not is_debugging():
        return
    if not format.endswith("\n"):
        format += "\n"
    text = format % args if args else format
    _out().write("[GIN-debug] " + text)


def debug_print_route(method: str, path: str, handlers: Sequence[Any]) -> None:
    """Report a registered route when debugging."""
    if not is_debugging():
        return
    count = len(handlers)
    handler_name = name_of_function(handlers[-1] if handlers else None)
    if _state.route_printer is None:
        debug_print("%-6s %-25s --> %s (%d handlers)\n", method, path, handler_name, count)
    else:
        _state.route_printer(method, path, handler_name, count)


def debug_print_load_template(names: Sequence[str]) -> None:
    """Report the names of loaded templates when debugging."""
    if not is_debugging():
        return
    listing = "".join(f"\t- {name}\n" for name in names)
    debug_print("Loaded HTML Templates (%d): \n%s\n", len(names), listing)


def debug_print_error(err: Any) -> None:
    """Write an error to the error stream when debugging."""
    if err is not None and is_debugging():
        _err().write(f"[GIN-debug] [ERROR] {err}\n")


def get_min_ver(version: str) -> int:
    """Return the minor component of a dotted version string."""
    first = version.find(".")
    last = version.rfind(".")
    part = version[first + 1 :] if first == last else version[first + 1 : last]
    if not part or not part.isascii() or not part.isdigit():
        raise ValueError(f"invalid syntax: {part!r}")
    number = int(part)
    if number >= 1 << 64:
        raise ValueError(f"value out of range: {part!r}")
    return number


def debug_print_warning_default() -> None:
    """Warn about an old interpreter and the default middleware."""
    try:
        minor = get_min_ver(platform.python_version())
    except ValueError:
        minor = None
    if minor is not None and minor < MIN_PYTHON_MINOR:
        debug_print(f"[WARNING] Now ginkit requires Python 3.{MIN_PYTHON_MINOR}+.\n\n")
    debug_print("[WARNING] Creating an Engine instance with the Logger and Recovery middleware already attached.\n\n")


def debug_print_warning_new() -> None:
    """Warn that the framework runs in debug mode."""
    debug_print(
        '[WARNING] Running in "debug" mode. Switch to "release" mode in production.\n'
        f" - using env:\texport {MODE_ENV}=release\n"
        ' - using code:\tginkit.debug.set_mode("release")\n\n'
    )


def debug_print_warning_set_html_template() -> None:
    """Warn that setting the HTML template is not thread-safe."""
    debug_print(
        "[WARNING] Since SetHTMLTemplate() is NOT thread-safe. It should only be called\n"
        "at initialization. ie. before any route is registered or the router is listening in a socket:\n\n"
        "\trouter = Engine()\n"
        "\trouter.set_html_template(template)  # << good place\n\n"
    )