"""Opening and working within transport archives of any form.

A transport archive is a directory or a tar (optionally gzipped) holding

* ``artifact-index.json``, describing the contained artifacts, and
* ``blobs/``, a flat list of content-addressed files named after their
  digest with the algorithm separator replaced by ``.``.

Archives in tar form are extracted into a temporary directory, worked on
there and, when opened for writing, archived back into their original form.
"""

from __future__ import annotations

import logging
import tempfile
from typing import Callable, Optional

from .archive import archive as _write_archive
from .archive import extract_tar
from .cancellation import Context
from .store import (
    CTF,
    O_CREATE,
    O_RDWR,
    FileFormat,
    UnsupportedFormatError,
    open_ctf_from_os_path,
)

_log = logging.getLogger(__name__)

_FNV32_OFFSET = 2166136261
_FNV32_PRIME = 16777619


def _fnv1a_32(data: bytes) -> int:
    value = _FNV32_OFFSET
    for byte in data:
        value ^= byte
        value = (value * _FNV32_PRIME) & 0xFFFFFFFF
    return value


def _extension(path: str) -> str:
    """Return the suffix from the last dot of the final path element, dot included."""
    for position in range(len(path) - 1, -1, -1):
        char = path[position]
        if char in "/\\":
            break
        if char == ".":
            return path[position:]
    return ""


def open_ctf(
    ctx: Optional[Context], path: str, format: FileFormat, flag: int
) -> CTF:
    """Open the archive at ``path`` stored in ``format``.

    Tar forms are extracted into a new temporary directory. If such an
    archive does not exist and ``flag`` contains ``O_CREATE``, an empty
    archive in that temporary directory is returned instead.
    """
    if format == FileFormat.DIRECTORY:
        return open_ctf_from_os_path(path, flag)
    if format in (FileFormat.TAR, FileFormat.TGZ):
        path_hash = _fnv1a_32(path.encode("utf-8"))
        tmp = tempfile.mkdtemp(prefix=f"ctf-{path_hash:08x}-")
        _log.debug(
            "ctf is automatically extracted and will need to be rearchived to persist: %s",
            tmp,
        )
        try:
            return extract_tar(ctx, tmp, path, format, flag)
        except FileNotFoundError:
            if flag & O_CREATE:
                return open_ctf_from_os_path(tmp, flag)
            raise
    raise UnsupportedFormatError()


def open_ctf_by_file_extension(
    ctx: Optional[Context], path: str, flag: int
) -> tuple[CTF, FileFormat]:
    """Open the archive at ``path``, choosing its form from the file extension.

    ``.tgz`` and ``.tar.gz`` mean a gzipped tar, ``.tar`` a tar; anything
    else is a directory. Returns the archive and the form found.
    """
    ext = _extension(path)
    if ext == ".gz":
        ext = _extension(path[: -len(".gz")]) + ext
    if ext in (".tgz", ".tar.gz"):
        discovered = FileFormat.TGZ
    elif ext == ".tar":
        discovered = FileFormat.TAR
    else:
        discovered = FileFormat.DIRECTORY
    return open_ctf(ctx, path, discovered, flag), discovered


def work_within_ctf(
    ctx: Optional[Context],
    path: str,
    flag: int,
    work: Callable[[Optional[Context], CTF], None],
) -> None:
    """Open the archive at ``path`` and call ``work(ctx, archive)`` on it.

    When ``flag`` contains ``O_RDWR`` and the archive is a tar form, it is
    archived back to ``path`` after ``work`` succeeds. If ``work`` raises,
    nothing is archived; directory archives are edited in place.
    """
    opened, format = open_ctf_by_file_extension(ctx, path, flag)
    work(ctx, opened)
    if flag & O_RDWR and format in (FileFormat.TAR, FileFormat.TGZ):
        _log.debug(
            "work within ctf has concluded and needs to be rearchived: path=%s format=%s",
            path,
            format,
        )
        _write_archive(ctx, opened, path, format)