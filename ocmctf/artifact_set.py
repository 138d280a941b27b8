"""Read access to legacy artifact sets.

An artifact set is a tar (usually gzipped) that looks like an OCI image
layout but differs from it:

* blobs are stored flat as ``blobs/<algorithm>.<encoded>`` rather than
  ``blobs/<algorithm>/<encoded>``;
* ``index.json`` is a valid OCI image index, but its ref-name annotation
  holds only the version of the resource, and it carries extra
  ``software.ocm/*`` annotations.

Artifact sets can only be read. ``convert_to_oci_image_layout`` turns one
into a proper OCI image layout.
"""

from __future__ import annotations

import contextlib
import gzip
import io
import json
import posixpath
import tarfile
import threading
import zlib
from typing import Any, BinaryIO, Callable, Optional

from .blob import (
    DigestAware,
    MediaTypeAware,
    ReadOnlyBlob,
    SizeAware,
    parse_digest,
)
from .cancellation import Context
from .store import BLOBS_DIRECTORY_NAME, to_blob_file_name, to_digest

ARTIFACT_SET_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+tar+gzip"
"""Media type under which artifact sets are stored as local blobs."""

ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"
IMAGE_LAYOUT_FILE = "oci-layout"
IMAGE_INDEX_FILE = "index.json"
IMAGE_LAYOUT_VERSION = "1.0.0"

_GZIP_MAGIC = b"\x1f\x8b"


def _normalize(name: str) -> str:
    normalized = posixpath.normpath(name.lstrip("/"))
    return "" if normalized == "." else normalized


class ArtifactBlob(ReadOnlyBlob, DigestAware, SizeAware):
    """A blob stored inside an artifact set."""

    def __init__(self, artifact_set: "ArtifactSet", name: str, digest: str, size: int) -> None:
        self._artifact_set = artifact_set
        self.name = name
        self._digest = digest
        self._size = size

    def size(self) -> int:
        return self._size

    def digest(self) -> str:
        return self._digest

    def reader(self) -> BinaryIO:
        return self._artifact_set._open(self.name)


class ArtifactSet:
    """A read-only view of an artifact set held in memory."""

    def __init__(
        self,
        tar: tarfile.TarFile,
        index: dict,
        close: Callable[[], None],
    ) -> None:
        self._tar = tar
        self._index = index
        self._close = close
        self._lock = threading.Lock()
        self._files: dict[str, tarfile.TarInfo] = {}
        self._directories: set[str] = set()
        for member in tar.getmembers():
            name = _normalize(member.name)
            if not name:
                continue
            if member.isreg():
                self._files[name] = member
            elif member.isdir():
                self._directories.add(name)
            parent = posixpath.dirname(name)
            while parent:
                self._directories.add(parent)
                parent = posixpath.dirname(parent)

    def _open(self, name: str) -> BinaryIO:
        member = self._files.get(_normalize(name))
        if member is None:
            raise FileNotFoundError(f"file {name!r} does not exist in artifact set")
        with self._lock:
            extracted = self._tar.extractfile(member)
            if extracted is None:
                raise FileNotFoundError(f"file {name!r} is not a regular file")
            with extracted:
                return io.BytesIO(extracted.read())

    def index(self) -> dict:
        """Return the OCI image index of the set (the stored object itself)."""
        return self._index

    def list_blobs(self, ctx: Optional[Context]) -> list[str]:
        """Return the digests of all blobs in the set, sorted by file name."""
        if BLOBS_DIRECTORY_NAME not in self._directories:
            raise FileNotFoundError(
                f"unable to list blobs: directory {BLOBS_DIRECTORY_NAME!r} does not exist"
            )
        prefix = BLOBS_DIRECTORY_NAME + "/"
        names = sorted(
            name[len(prefix):]
            for name in self._files
            if name.startswith(prefix) and "/" not in name[len(prefix):]
        )
        return [to_digest(name) for name in names]

    def get_blob(self, ctx: Optional[Context], digest: str) -> ArtifactBlob:
        """Return the blob with ``digest``; the digest must be valid and present."""
        name = posixpath.join(BLOBS_DIRECTORY_NAME, to_blob_file_name(digest))
        member = self._files.get(name)
        if member is None:
            raise FileNotFoundError(f"unable to stat file {name!r}: file does not exist")
        return ArtifactBlob(self, name, digest, member.size)

    def close(self) -> None:
        """Release the set and the stream it was read from."""
        self._close()

    def __enter__(self) -> "ArtifactSet":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def new_artifact_set_from_blob(blob: ReadOnlyBlob) -> ArtifactSet:
    """Open the artifact set stored in ``blob``.

    The set takes ownership of the blob's stream and must be closed. Gzip
    compression is detected from the content. A blob that knows its media
    type must declare ``ARTIFACT_SET_MEDIA_TYPE``.
    """
    if isinstance(blob, MediaTypeAware):
        media_type = blob.media_type()
        if media_type is not None and media_type != ARTIFACT_SET_MEDIA_TYPE:
            raise ValueError(
                f"unsupported media type {media_type!r}, expected {ARTIFACT_SET_MEDIA_TYPE!r}"
            )

    raw = blob.reader()
    try:
        data = raw.read()
        if not data:
            raise EOFError("artifact set blob is empty")
        if data[:2] == _GZIP_MAGIC:
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError, zlib.error) as exc:
                raise ValueError(f"failed to read gzip stream: {exc}") from exc
        try:
            tar = tarfile.open(fileobj=io.BytesIO(data), mode="r:")
        except tarfile.TarError as exc:
            raise ValueError(f"unable to read artifact set tar: {exc}") from exc

        def close() -> None:
            with contextlib.ExitStack() as stack:
                stack.callback(raw.close)
                stack.callback(tar.close)

        artifact_set = ArtifactSet(tar, {}, close)
        try:
            with artifact_set._open(IMAGE_INDEX_FILE) as raw_index:
                index = json.loads(raw_index.read().decode("utf-8"))
        except FileNotFoundError as exc:
            tar.close()
            raise FileNotFoundError(f"unable to open {IMAGE_INDEX_FILE}: {exc}") from exc
        except (ValueError, UnicodeDecodeError) as exc:
            tar.close()
            raise ValueError(f"unable to decode {IMAGE_INDEX_FILE}: {exc}") from exc
        if not isinstance(index, dict):
            tar.close()
            raise ValueError(f"unable to decode {IMAGE_INDEX_FILE}: not a JSON object")
        artifact_set._index = index
        return artifact_set
    except BaseException:
        raw.close()
        raise


def _add_bytes(tar: tarfile.TarFile, name: str, payload: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(payload)
    tar.addfile(info, io.BytesIO(payload))


def convert_to_oci_image_layout(
    ctx: Optional[Context],
    artifact_set: ArtifactSet,
    writer: BinaryIO,
    manifest_name_fn: Callable[[Optional[Context], str, str], str],
) -> None:
    """Write ``artifact_set`` to ``writer`` as an OCI image layout tar.

    Every manifest whose annotations carry a ref name has it replaced by
    ``manifest_name_fn(ctx, digest, old_name)``; the set's index is updated
    in place. Blobs are written as ``blobs/<algorithm>/<encoded>``.
    """
    with tarfile.open(fileobj=writer, mode="w|") as tar:
        layout = json.dumps(
            {"imageLayoutVersion": IMAGE_LAYOUT_VERSION}, separators=(",", ":")
        ).encode("utf-8")
        _add_bytes(tar, IMAGE_LAYOUT_FILE, layout)

        index = artifact_set.index()
        for manifest in index.get("manifests") or []:
            annotations = manifest.get("annotations")
            if annotations is None or ANNOTATION_REF_NAME not in annotations:
                continue
            annotations[ANNOTATION_REF_NAME] = manifest_name_fn(
                ctx, manifest.get("digest", ""), annotations[ANNOTATION_REF_NAME]
            )
        raw_index = json.dumps(index, separators=(",", ":")).encode("utf-8")
        _add_bytes(tar, IMAGE_INDEX_FILE, raw_index)

        for digest in artifact_set.list_blobs(ctx):
            algorithm, encoded = parse_digest(digest)
            blob = artifact_set.get_blob(ctx, digest)
            info = tarfile.TarInfo(posixpath.join(BLOBS_DIRECTORY_NAME, algorithm, encoded))
            info.size = blob.size()
            with contextlib.closing(blob.reader()) as data:
                tar.addfile(info, data)