"""Blobs stored on the operating system's file system.

``OSFileSystem`` is a directory-rooted view of the host file system whose
write operations can be switched off. ``FileBlob`` is a blob stored as a file
within such a view, and ``get_blob_from_os_path`` and ``copy_blob_to_os_path``
move blob content to and from plain paths.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import stat as stat_module
import threading
from typing import BinaryIO, Optional

from .blob import (
    SIZE_UNKNOWN,
    Blob,
    DigestAware,
    ReadOnlyBlob,
    SizeAware,
    digest_from_reader,
)

DEFAULT_FILE_IO_BUFFER_SIZE = 1 << 20
"""Buffer size used when copying blob data into files."""

_O_BINARY = getattr(os, "O_BINARY", 0)


class ReadOnlyError(PermissionError):
    """Raised when a write operation is attempted on a read-only file system."""

    def __init__(self, message: str = "read only file system") -> None:
        super().__init__(message)


def is_flag_read_only(flag: int) -> bool:
    """Return whether ``flag`` opens read-only.

    A flag is read-only if it carries ``os.O_RDONLY`` or carries neither
    ``os.O_WRONLY`` nor ``os.O_RDWR`` (the default open mode is read-only).
    """
    return bool(flag & os.O_RDONLY) or (
        not flag & os.O_WRONLY and not flag & os.O_RDWR
    )


def _stream_mode(flag: int) -> str:
    if flag & os.O_RDWR:
        return "r+b"
    if flag & os.O_WRONLY:
        # Appending, if requested, is already enforced by the descriptor.
        return "wb"
    return "rb"


def _open_stream(path: str, flag: int, perm: int) -> BinaryIO:
    fd = os.open(path, flag | _O_BINARY, perm)
    try:
        return os.fdopen(fd, _stream_mode(flag))
    except BaseException:
        os.close(fd)
        raise


class OSFileSystem:
    """A view of the host file system rooted at a base directory.

    All names are resolved relative to the base. Write operations fail with
    ``ReadOnlyError`` when the file system was opened read-only or was forced
    to be read-only afterwards.
    """

    def __init__(self, base: str, flag: int) -> None:
        self._base = base
        self._flag = flag
        self._flag_lock = threading.Lock()

    def _path(self, name: str) -> str:
        return os.path.normpath(os.path.join(self._base, name.lstrip("/\\")))

    def base(self) -> str:
        return self._base

    def open(self, name: str) -> BinaryIO:
        """Open ``name`` for reading."""
        return open(self._path(name), "rb")

    def open_file(self, name: str, flag: int, perm: int = 0o644) -> BinaryIO:
        """Open ``name`` with the ``os.O_*`` flags in ``flag``."""
        if self.read_only() and not is_flag_read_only(flag):
            raise ReadOnlyError()
        return _open_stream(self._path(name), flag, perm)

    def mkdir_all(self, name: str, perm: int = 0o755) -> None:
        """Create ``name`` and any missing parents."""
        if self.read_only():
            raise ReadOnlyError()
        os.makedirs(self._path(name), perm, exist_ok=True)

    def remove(self, name: str) -> None:
        """Remove a file or an empty directory."""
        if self.read_only():
            raise ReadOnlyError()
        path = self._path(name)
        if os.path.isdir(path) and not os.path.islink(path):
            os.rmdir(path)
        else:
            os.remove(path)

    def read_dir(self, name: str) -> list[os.DirEntry]:
        """Return the entries of directory ``name`` sorted by name."""
        with os.scandir(self._path(name)) as entries:
            return sorted(entries, key=lambda entry: entry.name)

    def remove_all(self, path: str) -> None:
        """Remove ``path`` and everything below it; a missing path is not an error."""
        if self.read_only():
            raise ReadOnlyError()
        target = self._path(path)
        if os.path.isdir(target) and not os.path.islink(target):
            shutil.rmtree(target)
        else:
            with contextlib.suppress(FileNotFoundError):
                os.remove(target)

    def stat(self, name: str) -> os.stat_result:
        return os.stat(self._path(name))

    def read_only(self) -> bool:
        with self._flag_lock:
            return is_flag_read_only(self._flag)

    def force_read_only(self) -> None:
        """Make the file system read-only from now on."""
        with self._flag_lock:
            self._flag &= os.O_RDONLY


def new_fs(base: str, flag: int) -> OSFileSystem:
    """Return a file system rooted at ``base``.

    With ``os.O_CREAT`` in ``flag`` a missing base directory is created,
    otherwise it must exist.
    """
    base = os.path.abspath(base)
    try:
        info = os.stat(base)
    except FileNotFoundError:
        if not flag & os.O_CREAT:
            raise FileNotFoundError(f"path does not exist: {base}") from None
        os.makedirs(base, 0o755, exist_ok=True)
    else:
        if not stat_module.S_ISDIR(info.st_mode):
            raise NotADirectoryError(f"path is not a directory: {base}")
    return OSFileSystem(base, flag)


class FileBlob(Blob, SizeAware, DigestAware):
    """A blob stored as a file in an ``OSFileSystem``."""

    def __init__(self, file_system: OSFileSystem, path: str) -> None:
        self.file_system = file_system
        self.path = path

    def reader(self) -> BinaryIO:
        return self.file_system.open_file(self.path, os.O_RDONLY, 0o400)

    def writer(self) -> BinaryIO:
        """Return a stream appending to the file, creating it if needed."""
        perm = 0o600
        try:
            info = self.file_system.stat(self.path)
        except FileNotFoundError:
            pass
        else:
            if stat_module.S_ISFIFO(info.st_mode):
                perm = 0
        return self.file_system.open_file(
            self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, perm
        )

    def size(self) -> int:
        try:
            return self.file_system.stat(self.path).st_size
        except OSError:
            return SIZE_UNKNOWN

    def digest(self) -> Optional[str]:
        try:
            with self.reader() as data:
                return digest_from_reader(data)
        except OSError:
            return None


def copy_blob_to_os_path(blob: ReadOnlyBlob, path: str) -> None:
    """Append the content of ``blob`` to the file at ``path``, creating it if needed.

    Named pipes are written to without being replaced.
    """
    with contextlib.closing(blob.reader()) as data:
        try:
            is_named_pipe = stat_module.S_ISFIFO(os.stat(path).st_mode)
        except OSError:
            is_named_pipe = False
        perm = 0 if is_named_pipe else 0o600
        with _open_stream(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, perm) as target:
            shutil.copyfileobj(data, target, DEFAULT_FILE_IO_BUFFER_SIZE)


def get_blob_from_os_path(path: str) -> FileBlob:
    """Return a read-only blob for the file at ``path``."""
    file_system = new_fs(os.path.dirname(os.path.abspath(path)), os.O_RDONLY)
    return FileBlob(file_system, os.path.basename(path))