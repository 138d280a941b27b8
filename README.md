# ocmctf

A library for working with Common Transport Format (CTF) archives: a layout
holding an `artifact-index.json` and a flat `blobs/` directory of
content-addressed files (named after their digest, with `:` replaced by `.`),
stored either as a directory, a tar archive or a gzip-compressed tar archive.

It also provides blob abstractions (read-only, writeable, size-, digest- and
media-type-aware blobs) and read-only access to legacy "artifact set" blobs,
which can be converted to OCI image layouts.

## Installation

```
pip install .
```

The package has no runtime dependencies beyond the standard library.

## Modules

- `ocmctf.blob` – blob interfaces (`ReadOnlyBlob`, `Blob`, `SizeAware`,
  `DigestAware`, `MediaTypeAware`, ...), digest helpers (`parse_digest`,
  `digest_from_bytes`, `digest_from_reader`), the in-memory
  `EagerBufferedReader` / `DirectReadOnlyBlob` and `archive_blob` for adding a
  blob to a `tarfile.TarFile`.
- `ocmctf.filesystem` – `OSFileSystem` (a directory-rooted view that can be made
  read-only), `new_fs`, `FileBlob`, `get_blob_from_os_path` and
  `copy_blob_to_os_path`.
- `ocmctf.index` – the artifact index: `Index`, `ArtifactMetadata`,
  `new_index`, `decode_index`, `encode`.
- `ocmctf.cancellation` – `Context` (cancellation and deadlines) and
  `new_ctx_reader`, a reader that fails with `Canceled` or `DeadlineExceeded`
  once its context has ended.
- `ocmctf.store` – `FileSystemCTF`, `CASFileBlob`, `FileFormat`, the open flags
  `O_RDONLY`, `O_RDWR`, `O_CREATE`, and `open_ctf_from_os_path`.
- `ocmctf.archive` – `extract_tar`, `archive`, `archive_directory`,
  `archive_tar`, `archive_tar_to_writer`.
- `ocmctf.ctf` – `open_ctf`, `open_ctf_by_file_extension`, `work_within_ctf`.
- `ocmctf.artifact_set` – `new_artifact_set_from_blob`, `ArtifactSet`,
  `ArtifactBlob`, `convert_to_oci_image_layout`.

## Usage

Open a CTF by its file extension (`.tar`, `.tgz`/`.tar.gz`, otherwise a
directory), store a blob and record it in the index:

```python
import io

from ocmctf.blob import DirectReadOnlyBlob
from ocmctf.cancellation import Context
from ocmctf.ctf import work_within_ctf
from ocmctf.index import ArtifactMetadata
from ocmctf.store import O_CREATE, O_RDWR

ctx = Context()
data = DirectReadOnlyBlob(io.BytesIO(b"test"))
digest = data.digest()

def work(ctx, ctf):
    ctf.save_blob(ctx, data)
    index = ctf.get_index(ctx)
    index.add_artifact(ArtifactMetadata(repository="test-repo", tag="latest", digest=digest))
    ctf.set_index(ctx, index)

work_within_ctf(ctx, "transport.tar.gz", O_CREATE | O_RDWR, work)
```

Tar archives are extracted into a temporary directory. When opened with
`O_RDWR`, they are written back to their original path and format once the
work function returns without raising; directory archives are edited in place.

Reading an existing archive:

```python
from ocmctf.cancellation import Context
from ocmctf.ctf import open_ctf_by_file_extension
from ocmctf.store import O_RDONLY

ctx = Context()
ctf, discovered = open_ctf_by_file_extension(ctx, "transport.tar", O_RDONLY)
for digest in ctf.list_blobs(ctx):
    with ctf.get_blob(ctx, digest).reader() as stream:
        print(digest, len(stream.read()))
```

An archive opened read-only raises `ocmctf.filesystem.ReadOnlyError` on any
write such as `set_index`.

Converting between forms is done with `ocmctf.archive.archive(ctx, ctf, path,
format)`, which accepts `FileFormat.DIRECTORY`, `FileFormat.TAR` or
`FileFormat.TGZ`. In tar form the artifact index is always the first entry.

## Legacy artifact sets

Blobs with media type `application/vnd.oci.image.manifest.v1+tar+gzip`
(`ARTIFACT_SET_MEDIA_TYPE`) can be opened with
`ocmctf.artifact_set.new_artifact_set_from_blob`; gzip compression is detected
from the content. The resulting `ArtifactSet` exposes its OCI index through
`index()`, lists and returns blobs, and must be closed (it is also a context
manager). `convert_to_oci_image_layout` writes it as an OCI image layout tar,
renaming each manifest's ref-name annotation through a callback and storing
blobs as `blobs/<algorithm>/<encoded>`.

## What it does not do

This is a library only: there is no command-line tool. Artifact sets can be
read and converted but not created or modified, and archives in tar form are
never edited directly; they are always worked on in an extracted directory.

## Tests

```
pip install .[test]
pytest
```