"""Moving transport archives between directory, tar and gzipped tar form.

Work on an archive always happens in directory form: ``extract_tar`` unpacks
a tar or gzipped tar into a directory archive, and ``archive`` writes an
archive back out as a directory, a tar or a gzipped tar. In tar form the
artifact index is always the first entry, followed by the blobs.
"""

from __future__ import annotations

import io
import os
import posixpath
import tarfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import BinaryIO, Optional

from .blob import SizeAware, archive_blob
from .cancellation import Context, new_ctx_reader
from .filesystem import is_flag_read_only
from .index import ARTIFACT_INDEX_FILE_NAME, encode
from .store import (
    BLOBS_DIRECTORY_NAME,
    CTF,
    O_CREATE,
    O_RDWR,
    FileFormat,
    FileSystemCTF,
    UnsupportedFormatError,
    open_ctf_from_os_path,
    to_blob_file_name,
)


def _ensure_context(ctx: Optional[Context]) -> Context:
    return ctx if ctx is not None else Context()


def extract_tar(
    ctx: Optional[Context], base: str, path: str, format: FileFormat, flag: int
) -> FileSystemCTF:
    """Unpack the tar (or gzipped tar) archive at ``path`` into directory ``base``.

    ``base`` must exist. The archive file itself is left untouched. The
    extracted archive is written first and then, if ``flag`` asks for
    read-only access, switched to read-only.
    """
    if format == FileFormat.DIRECTORY:
        raise UnsupportedFormatError()
    ctx = _ensure_context(ctx)

    with open(path, "rb") as tar_file:
        reader = new_ctx_reader(ctx, tar_file)
        extracted = open_ctf_from_os_path(base, O_RDWR)
        mode = "r|gz" if format == FileFormat.TGZ else "r|"
        with tarfile.open(fileobj=reader, mode=mode) as tar:
            _extract_to_filesystem_ctf(tar, extracted)

    if is_flag_read_only(flag):
        extracted.fs().force_read_only()
    return extracted


def _extract_to_filesystem_ctf(tar: tarfile.TarFile, extracted: FileSystemCTF) -> None:
    for member in tar:
        if ".." in member.name:
            raise ValueError(f'invalid tar entry, contains "..": {member.name}')
        if member.isreg():
            data = tar.extractfile(member)
            if data is None:
                continue
            extracted.write_file(member.name, data)
        elif member.isdir():
            extracted.fs().mkdir_all(member.name, 0o755)


def archive(ctx: Optional[Context], ctf: CTF, path: str, format: FileFormat) -> None:
    """Write ``ctf`` to ``path`` in the given format."""
    if format == FileFormat.DIRECTORY:
        archive_directory(ctx, ctf, path)
    elif format in (FileFormat.TAR, FileFormat.TGZ):
        archive_tar(ctx, ctf, path, format)
    else:
        raise UnsupportedFormatError()


def archive_directory(ctx: Optional[Context], ctf: CTF, path: str) -> None:
    """Copy ``ctf`` into a directory archive at ``path``, creating it if needed.

    Blobs are copied concurrently; the first failure cancels the remaining
    copies and is raised.
    """
    ctx = _ensure_context(ctx).with_cancel()
    try:
        blobs = ctf.list_blobs(ctx)
        target = open_ctf_from_os_path(path, O_RDWR | O_CREATE)

        if blobs:
            group_ctx = ctx.with_cancel()

            def copy(digest: str) -> None:
                blob = ctf.get_blob(group_ctx, digest)
                target.save_blob(group_ctx, blob)

            first_error: Optional[BaseException] = None
            with ThreadPoolExecutor(max_workers=os.cpu_count() or 1) as pool:
                futures = [pool.submit(copy, digest) for digest in blobs]
                for future in as_completed(futures):
                    error = future.exception()
                    if error is not None and first_error is None:
                        first_error = error
                        group_ctx.cancel()
            if first_error is not None:
                raise first_error

        target.set_index(ctx, ctf.get_index(ctx))
    finally:
        ctx.cancel()


def archive_tar(
    ctx: Optional[Context], ctf: CTF, path: str, format: FileFormat
) -> None:
    """Write ``ctf`` as a tar (or gzipped tar) file at ``path``, replacing any file there."""
    with open(path, "wb") as file:
        archive_tar_to_writer(ctx, ctf, file, format)


def archive_tar_to_writer(
    ctx: Optional[Context], ctf: CTF, writer: BinaryIO, format: FileFormat
) -> None:
    """Write ``ctf`` as a tar stream to ``writer``, gzipped for ``FileFormat.TGZ``.

    The index is the first entry; blobs follow in the order ``list_blobs``
    returns them.
    """
    if format == FileFormat.DIRECTORY:
        raise UnsupportedFormatError()
    ctx = _ensure_context(ctx)
    mode = "w|gz" if format == FileFormat.TGZ else "w|"

    with tarfile.open(fileobj=writer, mode=mode) as tar:
        blobs = ctf.list_blobs(ctx)
        _archive_index(ctx, ctf, tar)
        for digest in blobs:
            blob = ctf.get_blob(ctx, digest)
            if not isinstance(blob, SizeAware):
                raise ValueError(f"blob {digest} has no known size")
            name = posixpath.join(BLOBS_DIRECTORY_NAME, to_blob_file_name(digest))
            archive_blob(name, blob.size(), digest, blob, tar)


def _archive_index(ctx: Context, ctf: CTF, tar: tarfile.TarFile) -> None:
    raw_index = encode(ctf.get_index(ctx))
    info = tarfile.TarInfo(ARTIFACT_INDEX_FILE_NAME)
    info.mode = 0o644
    info.size = len(raw_index)
    tar.addfile(info, io.BytesIO(raw_index))