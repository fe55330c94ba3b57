"""Read-only file systems rooted at a directory, optionally without listings."""

from __future__ import annotations

import os
import posixpath
from pathlib import Path


class FSFile:
    """An open file or directory served from a file system."""

    def __init__(self, path: str | os.PathLike, *, listing: bool = True) -> None:
        self.path = Path(path)
        self.listing = listing
        self._handle = None if self.path.is_dir() else open(self.path, "rb")

    @property
    def is_dir(self) -> bool:
        """True when this entry is a directory."""
        return self._handle is None

    def read(self) -> bytes:
        """Return the remaining contents of the file."""
        if self._handle is None:
            raise IsADirectoryError(f"is a directory: {self.path}")
        return self._handle.read()

    def readdir(self) -> list[str]:
        """Return the sorted entry names of a directory; empty when listing is disabled."""
        if not self.listing:
            return []
        if self._handle is not None:
            raise NotADirectoryError(f"not a directory: {self.path}")
        return sorted(entry.name for entry in self.path.iterdir())

    def close(self) -> None:
        """Release the underlying file handle."""
        if self._handle is not None:
            self._handle.close()

    def __enter__(self) -> FSFile:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DirFS:
    """A file system serving files beneath a root directory."""

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root or ".")

    def open(self, name: str) -> FSFile:
        """Open a slash-separated path, confined to the root."""
        if "\x00" in name or (os.sep != "/" and os.sep in name):
            raise ValueError("invalid character in file path")
        relative = posixpath.normpath("/" + name).lstrip("/")
        target = self.root.joinpath(*relative.split("/")) if relative else self.root
        return FSFile(target)


class OnlyFilesFS:
    """A file system whose directories cannot be listed."""

    def __init__(self, fs: DirFS) -> None:
        self.fs = fs

    def open(self, name: str) -> FSFile:
        """Open a path with directory listing disabled."""
        opened = self.fs.open(name)
        opened.listing = False
        return opened


def dir_fs(root: str | os.PathLike, list_directory: bool) -> DirFS | OnlyFilesFS:
    """Return a file system for ``root``, hiding listings unless ``list_directory``."""
    fs = DirFS(root)
    if list_directory:
        return fs
    return OnlyFilesFS(fs)