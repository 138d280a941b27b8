"""Binary large objects: abstract blob interfaces and in-memory helpers.

The interfaces describe data purely at the byte level: a blob can be read
(``ReadOnlyBlob``), written (``WriteableBlob``) or both (``Blob``), and may
additionally know its size, digest or media type without the caller having
to inspect the content.

``EagerBufferedReader`` loads a stream fully into memory so that its size and
digest can be computed; it should only be used for data of modest size.
"""

from __future__ import annotations

import contextlib
import hashlib
import io
import re
import tarfile
import threading
from abc import ABC, abstractmethod
from typing import BinaryIO, Optional

SIZE_UNKNOWN = -1
"""Size reported by a blob whose size is not known."""

DEFAULT_ARCHIVE_BLOB_BUFFER_SIZE = 128 * 1024
"""Buffer size used when copying blob data into archives."""

DEFAULT_MEDIA_TYPE = "application/octet-stream"

_CHUNK_SIZE = 64 * 1024

_ALGORITHM_HEX_LENGTHS = {"sha256": 64, "sha384": 96, "sha512": 128}
_DIGEST_PATTERN = re.compile(r"[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+")
_HEX_PATTERN = re.compile(r"[a-f0-9]+")


class InvalidDigestError(ValueError):
    """Raised when a string is not a valid content digest."""


def parse_digest(value: str) -> tuple[str, str]:
    """Validate a digest such as ``sha256:<hex>`` and return (algorithm, encoded)."""
    separator = value.find(":")
    if separator <= 0 or separator + 1 == len(value):
        raise InvalidDigestError(f"invalid checksum digest format: {value!r}")
    algorithm, encoded = value[:separator], value[separator + 1 :]
    expected_length = _ALGORITHM_HEX_LENGTHS.get(algorithm)
    if expected_length is None:
        if not _DIGEST_PATTERN.fullmatch(value):
            raise InvalidDigestError(f"invalid checksum digest format: {value!r}")
        raise InvalidDigestError(f"unsupported digest algorithm: {value!r}")
    if len(encoded) != expected_length:
        raise InvalidDigestError(f"invalid checksum digest length: {value!r}")
    if not _HEX_PATTERN.fullmatch(encoded):
        raise InvalidDigestError(f"invalid checksum digest format: {value!r}")
    return algorithm, encoded


def digest_from_reader(reader: BinaryIO) -> str:
    """Return the canonical (sha256) digest of everything readable from ``reader``."""
    hasher = hashlib.sha256()
    while chunk := reader.read(_CHUNK_SIZE):
        hasher.update(chunk)
    return f"sha256:{hasher.hexdigest()}"


def digest_from_bytes(data: bytes) -> str:
    """Return the canonical (sha256) digest of ``data``."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class ReadOnlyBlob(ABC):
    """A blob whose content can be read."""

    @abstractmethod
    def reader(self) -> BinaryIO:
        """Return a new binary stream over the blob content; the caller closes it."""


class WriteableBlob(ABC):
    """A blob whose content can be written."""

    @abstractmethod
    def writer(self) -> BinaryIO:
        """Return a new binary stream appending to the blob; the caller closes it."""


class Blob(ReadOnlyBlob, WriteableBlob):
    """A blob that can be both read and written."""


class SizeAware(ABC):
    """An object that can report its size in bytes."""

    @abstractmethod
    def size(self) -> int:
        """Return the size in bytes, or ``SIZE_UNKNOWN``."""


class SizePrecalculatable(ABC):
    """An object whose size may be known before reading it."""

    @abstractmethod
    def has_precalculated_size(self) -> bool:
        """Return whether the size is known in advance."""

    @abstractmethod
    def set_precalculated_size(self, size: int) -> None:
        """Record a size known in advance."""


class DigestAware(ABC):
    """An object that can report its content digest."""

    @abstractmethod
    def digest(self) -> Optional[str]:
        """Return the digest, or ``None`` if it is not known."""


class DigestPrecalculatable(ABC):
    """An object whose digest may be known before reading it."""

    @abstractmethod
    def has_precalculated_digest(self) -> bool:
        """Return whether the digest is known in advance."""

    @abstractmethod
    def set_precalculated_digest(self, digest: str) -> None:
        """Record a digest known in advance, replacing any previous one."""


class MediaTypeAware(ABC):
    """An object associated with a media type."""

    @abstractmethod
    def media_type(self) -> Optional[str]:
        """Return the media type, or ``None`` if it is not known."""


class MediaTypeOverrideable(ABC):
    """An object whose media type can be overridden."""

    @abstractmethod
    def set_media_type(self, media_type: str) -> None:
        """Replace the media type."""


class EagerBufferedReader(
    SizeAware,
    SizePrecalculatable,
    DigestAware,
    DigestPrecalculatable,
    MediaTypeAware,
    MediaTypeOverrideable,
):
    """A reader that loads its source fully into memory to learn size and digest."""

    def __init__(self, reader: Optional[BinaryIO]) -> None:
        self._lock = threading.RLock()
        self._source = reader
        self._buffer = io.BytesIO()
        self._digest = ""
        self._size = 0
        self._loaded = False
        self._media_type = DEFAULT_MEDIA_TYPE

    def load_eagerly(self) -> None:
        """Read the whole source into memory, computing digest and size once."""
        with self._lock:
            if self._loaded:
                return
            hasher = hashlib.sha256()
            if self._source is not None:
                while chunk := self._source.read(_CHUNK_SIZE):
                    hasher.update(chunk)
                    self._buffer.write(chunk)
            self._digest = f"sha256:{hasher.hexdigest()}"
            loaded_size = self._buffer.tell()
            self._size = max(self._size, loaded_size)
            self._buffer.seek(0)
            self._loaded = True

    def loaded(self) -> bool:
        with self._lock:
            return self._loaded

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes (all remaining if negative) from the buffer."""
        self.load_eagerly()
        with self._lock:
            return self._buffer.read(size)

    def close(self) -> None:
        close = getattr(self._source, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "EagerBufferedReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def digest(self) -> Optional[str]:
        try:
            self.load_eagerly()
        except (OSError, ValueError):
            return None
        with self._lock:
            return self._digest

    def has_precalculated_digest(self) -> bool:
        return self.loaded()

    def set_precalculated_digest(self, digest: str) -> None:
        with self._lock:
            self._digest = digest

    def size(self) -> int:
        try:
            self.load_eagerly()
        except (OSError, ValueError):
            return SIZE_UNKNOWN
        with self._lock:
            return self._size

    def has_precalculated_size(self) -> bool:
        return self.loaded()

    def set_precalculated_size(self, size: int) -> None:
        with self._lock:
            self._size = size

    def media_type(self) -> str:
        with self._lock:
            return self._media_type

    def set_media_type(self, media_type: str) -> None:
        with self._lock:
            self._media_type = media_type


class DirectReadOnlyBlob(EagerBufferedReader, ReadOnlyBlob):
    """A read-only blob over a stream, buffered to learn its size and digest.

    Only use this when no size or digest information is otherwise available.
    """

    def reader(self) -> "DirectReadOnlyBlob":
        return self


def archive_blob(
    name: str, size: int, digest: str, blob: ReadOnlyBlob, tar: tarfile.TarFile
) -> None:
    """Add ``blob`` to ``tar`` as a regular file named ``name`` of ``size`` bytes."""
    info = tarfile.TarInfo(name)
    info.size = size
    info.mode = 0o644
    try:
        data = blob.reader()
    except Exception as exc:
        raise OSError(f"unable to read blob {digest}: {exc}") from exc
    with contextlib.closing(data):
        try:
            tar.addfile(info, data)
        except (OSError, tarfile.TarError) as exc:
            raise OSError(f"unable to write blob: {exc}") from exc