import io
import json

import pytest

from ocmctf.index import (
    SCHEMA_VERSION,
    ArtifactMetadata,
    Index,
    SchemaVersionMismatchError,
    decode_index,
    encode,
    new_index,
)


def test_new_index_is_empty_at_schema_version():
    index = new_index()
    assert index.schema_version == SCHEMA_VERSION
    assert index.artifacts == []


def test_encode_empty_index():
    assert encode(new_index()) == b'{"schemaVersion":1,"artifacts":null}'


def test_new_index_schema_version_is_one():
    assert new_index().schema_version == 1


def test_add_artifact_appends_in_order():
    index = new_index()
    first = ArtifactMetadata(repository="a", tag="1")
    second = ArtifactMetadata(repository="b", tag="2")
    index.add_artifact(first)
    index.add_artifact(second)
    assert index.artifacts == [first, second]


def test_round_trip():
    index = new_index()
    index.add_artifact(
        ArtifactMetadata(
            repository="component-descriptors/github.com/acme.org/helloworld",
            tag="1.0.0",
            digest="sha256:9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
        )
    )
    index.add_artifact(ArtifactMetadata(repository="test-repo"))
    assert decode_index(encode(index)) == index


def test_empty_round_trip():
    assert decode_index(encode(new_index())) == new_index()


def test_empty_tag_and_digest_are_omitted():
    index = Index(artifacts=[ArtifactMetadata(repository="repo")])
    raw = json.loads(encode(index))
    assert raw["artifacts"] == [{"repository": "repo"}]


def test_decode_from_stream_and_text():
    payload = '{"schemaVersion":1,"artifacts":[{"repository":"r","tag":"t"}]}'
    from_stream = decode_index(io.BytesIO(payload.encode()))
    from_text = decode_index(payload)
    expected = Index(artifacts=[ArtifactMetadata(repository="r", tag="t")])
    assert from_stream == expected
    assert from_text == expected


def test_decode_rejects_other_schema_version():
    with pytest.raises(SchemaVersionMismatchError):
        decode_index(b'{"schemaVersion":2,"artifacts":[]}')


def test_decode_rejects_missing_schema_version():
    with pytest.raises(SchemaVersionMismatchError):
        decode_index(b'{"artifacts":[]}')


def test_decode_rejects_unknown_index_field():
    with pytest.raises(ValueError, match="unknown"):
        decode_index(b'{"schemaVersion":1,"artifacts":[],"extra":true}')


def test_decode_rejects_unknown_artifact_field():
    with pytest.raises(ValueError, match="unknown"):
        decode_index(
            b'{"schemaVersion":1,"artifacts":[{"repository":"r","extra":"x"}]}'
        )


def test_decode_rejects_malformed_json():
    with pytest.raises(ValueError):
        decode_index(b"{not json")


def test_encode_escapes_html_characters():
    index = Index(artifacts=[ArtifactMetadata(repository="a<b>&c")])
    encoded = encode(index)
    assert b"<" not in encoded and b">" not in encoded and b"&" not in encoded
    assert decode_index(encoded).artifacts[0].repository == "a<b>&c"