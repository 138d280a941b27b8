"""Directory-backed storage of a transport archive.

A transport archive holds an artifact index (``artifact-index.json``) and a
flat ``blobs`` directory of content-addressed files whose names are digests
with the algorithm separator ``:`` replaced by ``.``. ``FileSystemCTF`` reads
and writes that layout inside an ``OSFileSystem``.
"""

from __future__ import annotations

import contextlib
import io
import os
import posixpath
import shutil
import threading
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import BinaryIO, Optional

from .blob import (
    DEFAULT_ARCHIVE_BLOB_BUFFER_SIZE,
    DigestAware,
    DigestPrecalculatable,
    InvalidDigestError,
    ReadOnlyBlob,
    SizeAware,
    parse_digest,
)
from .cancellation import Context, new_ctx_reader
from .filesystem import FileBlob, OSFileSystem, new_fs
from .index import ARTIFACT_INDEX_FILE_NAME, Index, decode_index, encode, new_index

BLOBS_DIRECTORY_NAME = "blobs"

O_RDONLY = os.O_RDONLY
"""Open an archive read-only."""
O_RDWR = os.O_RDWR
"""Open an archive for reading and writing."""
O_CREATE = os.O_CREAT
"""Create the archive if it does not exist."""


class UnsupportedFormatError(ValueError):
    """Raised when an operation does not support the requested archive format."""

    def __init__(self, message: str = "unsupported format") -> None:
        super().__init__(message)


class FileFormat(IntEnum):
    """The on-disk form of a transport archive."""

    UNKNOWN = 0
    DIRECTORY = 1
    TAR = 2
    TGZ = 3

    def __str__(self) -> str:
        return self.name.lower()


class CTF(ABC):
    """A transport archive giving access to an artifact index and blobs."""

    @abstractmethod
    def format(self) -> FileFormat:
        """Return the form the archive is stored in."""

    @abstractmethod
    def get_index(self, ctx: Optional[Context]) -> Index:
        """Return the artifact index."""

    @abstractmethod
    def set_index(self, ctx: Optional[Context], index: Index) -> None:
        """Replace the artifact index."""

    @abstractmethod
    def list_blobs(self, ctx: Optional[Context]) -> list[str]:
        """Return the digests of all blobs, referenced by the index or not."""

    @abstractmethod
    def get_blob(self, ctx: Optional[Context], digest: str) -> ReadOnlyBlob:
        """Return the blob with the given digest."""

    @abstractmethod
    def save_blob(self, ctx: Optional[Context], blob: ReadOnlyBlob) -> None:
        """Store a blob under its digest."""

    @abstractmethod
    def delete_blob(self, ctx: Optional[Context], digest: str) -> None:
        """Remove the blob with the given digest."""


def to_blob_file_name(digest: str) -> str:
    """Return the blob file name for a valid ``digest`` (``:`` becomes ``.``)."""
    try:
        parse_digest(digest)
    except InvalidDigestError as exc:
        raise InvalidDigestError(
            f"invalid digest {digest!r} could not be converted to blob file name: {exc}"
        ) from exc
    return digest.replace(":", ".")


def to_digest(blob_file_name: str) -> str:
    """Return the digest for a blob file name (``.`` becomes ``:``)."""
    return blob_file_name.replace(".", ":")


class CASFileBlob(ReadOnlyBlob, DigestAware, DigestPrecalculatable, SizeAware):
    """A content-addressed blob stored as a file, caching its digest."""

    def __init__(self, file_system: OSFileSystem, path: str) -> None:
        self._blob = FileBlob(file_system, path)
        self._digest = ""
        self._lock = threading.Lock()

    def reader(self) -> BinaryIO:
        return self._blob.reader()

    def digest(self) -> Optional[str]:
        with self._lock:
            if self._digest:
                return self._digest
            computed = self._blob.digest()
            if computed is None:
                return None
            self._digest = computed
            return computed

    def has_precalculated_digest(self) -> bool:
        with self._lock:
            return bool(self._digest)

    def set_precalculated_digest(self, digest: str) -> None:
        """Record ``digest``; an empty digest is ignored."""
        if not digest:
            return
        with self._lock:
            self._digest = digest

    def size(self) -> int:
        return self._blob.size()


class FileSystemCTF(CTF):
    """A transport archive stored as a directory in an ``OSFileSystem``."""

    def __init__(self, file_system: OSFileSystem) -> None:
        self._fs = file_system

    def fs(self) -> OSFileSystem:
        """Return the underlying file system; writing to it can corrupt the archive."""
        return self._fs

    def format(self) -> FileFormat:
        return FileFormat.DIRECTORY

    def get_index(self, ctx: Optional[Context]) -> Index:
        """Return the stored index, or an empty one if none has been written."""
        try:
            info = self._fs.stat(ARTIFACT_INDEX_FILE_NAME)
        except FileNotFoundError:
            return new_index()
        if info.st_size == 0:
            return new_index()
        with self._fs.open(ARTIFACT_INDEX_FILE_NAME) as index_file:
            return decode_index(index_file)

    def set_index(self, ctx: Optional[Context], index: Index) -> None:
        self.write_file(ARTIFACT_INDEX_FILE_NAME, io.BytesIO(encode(index)))

    def write_file(self, name: str, raw: BinaryIO) -> None:
        """Write the content of ``raw`` to ``name``, creating parent directories."""
        self._fs.mkdir_all(posixpath.dirname(name), 0o755)
        with self._fs.open_file(name, os.O_CREAT | os.O_WRONLY, 0o644) as target:
            shutil.copyfileobj(raw, target, DEFAULT_ARCHIVE_BLOB_BUFFER_SIZE)

    def delete_blob(self, ctx: Optional[Context], digest: str) -> None:
        file_name = to_blob_file_name(digest)
        self._fs.remove(posixpath.join(BLOBS_DIRECTORY_NAME, file_name))

    def get_blob(self, ctx: Optional[Context], digest: str) -> CASFileBlob:
        file_name = to_blob_file_name(digest)
        blob = CASFileBlob(self._fs, posixpath.join(BLOBS_DIRECTORY_NAME, file_name))
        blob.set_precalculated_digest(digest)
        return blob

    def list_blobs(self, ctx: Optional[Context]) -> list[str]:
        return [
            to_digest(entry.name)
            for entry in self._fs.read_dir(BLOBS_DIRECTORY_NAME)
            if entry.is_file(follow_symlinks=False)
        ]

    def save_blob(self, ctx: Optional[Context], blob: ReadOnlyBlob) -> None:
        """Store ``blob`` under its digest; the blob must know its digest."""
        if not isinstance(blob, DigestAware):
            raise ValueError("blob does not have a digest that can be used to save it")
        if ctx is None:
            ctx = Context()
        with contextlib.closing(blob.reader()) as data:
            digest = blob.digest()
            if digest is None:
                raise ValueError(
                    "blob does not have a digest that can be used to save it"
                )
            file_name = to_blob_file_name(digest)
            self.write_file(
                posixpath.join(BLOBS_DIRECTORY_NAME, file_name),
                new_ctx_reader(ctx, data),
            )


def open_ctf_from_os_path(path: str, flag: int) -> FileSystemCTF:
    """Open the directory archive at ``path`` with ``O_RDONLY``, ``O_RDWR``, ``O_CREATE`` flags."""
    return FileSystemCTF(new_fs(path, flag))