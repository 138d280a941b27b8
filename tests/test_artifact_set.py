import io
import json
import tarfile

import pytest

from ocmctf.artifact_set import (
    ANNOTATION_REF_NAME,
    ARTIFACT_SET_MEDIA_TYPE,
    ArtifactBlob,
    convert_to_oci_image_layout,
    new_artifact_set_from_blob,
)
from ocmctf.blob import (
    DirectReadOnlyBlob,
    InvalidDigestError,
    ReadOnlyBlob,
    digest_from_bytes,
)
from ocmctf.store import O_CREATE, O_RDWR, open_ctf_from_os_path

MANIFEST = b'{"schemaVersion":2,"layers":[]}'
CONFIG = b'{"architecture":"amd64"}'
LAYER = b"layer content"
MANIFEST_DIGEST = digest_from_bytes(MANIFEST)


class _TrackingBlob(ReadOnlyBlob):
    def __init__(self, data):
        self.data = data
        self.streams = []

    def reader(self):
        stream = io.BytesIO(self.data)
        self.streams.append(stream)
        return stream


def _index(annotations=True):
    manifest = {
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "digest": MANIFEST_DIGEST,
        "size": len(MANIFEST),
    }
    if annotations:
        manifest["annotations"] = {
            ANNOTATION_REF_NAME: "6.7.1",
            "software.ocm/tags": "6.7.1",
        }
    return {
        "schemaVersion": 2,
        "manifests": [manifest],
        "annotations": {"software.ocm/main": MANIFEST_DIGEST},
    }


def _make_set(gzipped=True, index=None, with_index=True, with_blobs=True):
    buffer = io.BytesIO()
    mode = "w:gz" if gzipped else "w"
    with tarfile.open(fileobj=buffer, mode=mode) as tar:
        def add(name, payload):
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))

        if with_index:
            add("index.json", json.dumps(index or _index()).encode())
        if with_blobs:
            for payload in (MANIFEST, CONFIG, LAYER):
                add("blobs/" + digest_from_bytes(payload).replace(":", "."), payload)
    return buffer.getvalue()


def _direct(data):
    blob = DirectReadOnlyBlob(io.BytesIO(data))
    blob.set_media_type(ARTIFACT_SET_MEDIA_TYPE)
    return blob


@pytest.mark.parametrize("gzipped", [True, False])
def test_reads_blobs_and_index(gzipped):
    with new_artifact_set_from_blob(_direct(_make_set(gzipped=gzipped))) as artifact_set:
        blobs = artifact_set.list_blobs(None)
        assert len(blobs) == 3
        assert sorted(blobs) == sorted(digest_from_bytes(p) for p in (MANIFEST, CONFIG, LAYER))
        index = artifact_set.index()
        assert len(index["manifests"]) == 1
        nested = artifact_set.get_blob(None, index["manifests"][0]["digest"])
        assert isinstance(nested, ArtifactBlob)
        assert nested.digest() == MANIFEST_DIGEST
        assert nested.size() == len(MANIFEST)
        with nested.reader() as stream:
            assert stream.read() == MANIFEST


def test_wrong_media_type_rejected():
    blob = DirectReadOnlyBlob(io.BytesIO(_make_set()))
    with pytest.raises(ValueError, match="unsupported media type"):
        new_artifact_set_from_blob(blob)


def test_blob_without_media_type_accepted_and_closed():
    blob = _TrackingBlob(_make_set())
    artifact_set = new_artifact_set_from_blob(blob)
    assert len(artifact_set.list_blobs(None)) == 3
    assert not blob.streams[0].closed
    artifact_set.close()
    assert blob.streams[0].closed


def test_empty_blob_rejected():
    with pytest.raises(EOFError):
        new_artifact_set_from_blob(_TrackingBlob(b""))


def test_not_a_tar_rejected():
    with pytest.raises(ValueError):
        new_artifact_set_from_blob(_TrackingBlob(b"this is definitely not a tar archive" * 20))


def test_missing_index_rejected():
    with pytest.raises(FileNotFoundError, match="index.json"):
        new_artifact_set_from_blob(_TrackingBlob(_make_set(with_index=False)))


def test_missing_blobs_directory():
    with new_artifact_set_from_blob(_TrackingBlob(_make_set(with_blobs=False))) as artifact_set:
        with pytest.raises(FileNotFoundError):
            artifact_set.list_blobs(None)


def test_get_blob_errors():
    with new_artifact_set_from_blob(_TrackingBlob(_make_set())) as artifact_set:
        with pytest.raises(InvalidDigestError):
            artifact_set.get_blob(None, "not-a-digest")
        with pytest.raises(FileNotFoundError):
            artifact_set.get_blob(None, digest_from_bytes(b"absent"))


def test_convert_to_oci_image_layout():
    prefix = "my-repo-from-external-descriptor/my-image"
    with new_artifact_set_from_blob(_direct(_make_set())) as artifact_set:
        artifact_set_index = artifact_set.index()
        output = io.BytesIO()
        convert_to_oci_image_layout(
            None,
            artifact_set,
            output,
            lambda _ctx, digest, old_name: f"{prefix}:{old_name}@{digest}",
        )

    expected_name = f"{prefix}:6.7.1@{MANIFEST_DIGEST}"
    assert artifact_set_index["manifests"][0]["annotations"][ANNOTATION_REF_NAME] == expected_name

    with tarfile.open(fileobj=io.BytesIO(output.getvalue()), mode="r:") as tar:
        names = tar.getnames()
        assert names[0] == "oci-layout"
        layout = json.loads(tar.extractfile("oci-layout").read())
        assert layout == {"imageLayoutVersion": "1.0.0"}
        index = json.loads(tar.extractfile("index.json").read())
        assert len(index["manifests"]) == 1
        assert index["manifests"][0]["annotations"][ANNOTATION_REF_NAME] == expected_name
        blob_entries = [n for n in names if n.startswith("blobs/sha256/")]
        assert len(blob_entries) == 3
        encoded = MANIFEST_DIGEST.split(":", 1)[1]
        assert tar.extractfile(f"blobs/sha256/{encoded}").read() == MANIFEST


def test_convert_leaves_unannotated_manifests_alone():
    calls = []
    blob = _TrackingBlob(_make_set(index=_index(annotations=False)))
    with new_artifact_set_from_blob(blob) as artifact_set:
        output = io.BytesIO()
        convert_to_oci_image_layout(
            None, artifact_set, output, lambda *args: calls.append(args) or "x"
        )
    assert calls == []
    with tarfile.open(fileobj=io.BytesIO(output.getvalue()), mode="r:") as tar:
        index = json.loads(tar.extractfile("index.json").read())
    assert "annotations" not in index["manifests"][0]


def test_artifact_set_from_ctf_blob(tmp_path):
    data = _make_set()
    ctf = open_ctf_from_os_path(str(tmp_path / "ctf"), O_RDWR | O_CREATE)
    ctf.save_blob(None, DirectReadOnlyBlob(io.BytesIO(data)))
    stored = ctf.get_blob(None, digest_from_bytes(data))
    with new_artifact_set_from_blob(stored) as artifact_set:
        assert len(artifact_set.list_blobs(None)) == 3
        assert artifact_set.index()["manifests"][0]["digest"] == MANIFEST_DIGEST