"""The artifact index stored at the root of a transport archive.

The index lists the artifacts held in the archive, each with a repository
name, an optional tag and the digest of the blob describing it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, BinaryIO, TextIO, Union

SCHEMA_VERSION = 1
ARTIFACT_INDEX_FILE_NAME = "artifact-index.json"

_ARTIFACT_FIELDS = {"repository", "tag", "digest"}
_INDEX_FIELDS = {"schemaVersion", "artifacts"}


class SchemaVersionMismatchError(ValueError):
    """Raised when an index declares a schema version other than the supported one."""

    def __init__(self) -> None:
        super().__init__(
            f"schema version mismatch, only {SCHEMA_VERSION} is supported"
        )


@dataclass
class ArtifactMetadata:
    """Metadata of one artifact stored in the archive.

    ``repository`` is the relative repository name, ``tag`` the tag that
    references the artifact and ``digest`` the digest of the blob holding it.
    """

    repository: str
    tag: str = ""
    digest: str = ""


@dataclass
class Index:
    """A versioned collection of artifact metadata."""

    schema_version: int = SCHEMA_VERSION
    artifacts: list[ArtifactMetadata] = field(default_factory=list)

    def add_artifact(self, artifact: ArtifactMetadata) -> None:
        self.artifacts.append(artifact)


def new_index() -> Index:
    """Return an empty index at the supported schema version."""
    return Index()


def _read_text(data: Union[bytes, str, BinaryIO, TextIO]) -> str:
    if hasattr(data, "read"):
        data = data.read()
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).decode("utf-8")
    return data


def _string_field(obj: dict, key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string, got {value!r}")
    return value


def _decode_artifact(raw: Any) -> ArtifactMetadata:
    if not isinstance(raw, dict):
        raise ValueError(f"artifact must be an object, got {raw!r}")
    unknown = set(raw) - _ARTIFACT_FIELDS
    if unknown:
        raise ValueError(f"unknown artifact field {sorted(unknown)[0]!r}")
    return ArtifactMetadata(
        repository=_string_field(raw, "repository"),
        tag=_string_field(raw, "tag"),
        digest=_string_field(raw, "digest"),
    )


def decode_index(data: Union[bytes, str, BinaryIO, TextIO]) -> Index:
    """Decode an index from JSON bytes, text or a readable stream.

    Unknown fields are rejected, and the schema version must be the
    supported one.
    """
    text = _read_text(data).lstrip()
    raw, _ = json.JSONDecoder().raw_decode(text)
    if not isinstance(raw, dict):
        raise ValueError("artifact index must be a JSON object")
    unknown = set(raw) - _INDEX_FIELDS
    if unknown:
        raise ValueError(f"unknown index field {sorted(unknown)[0]!r}")

    version = raw.get("schemaVersion", 0)
    if version is None:
        version = 0
    if not isinstance(version, int) or isinstance(version, bool):
        raise ValueError(f"schemaVersion must be an integer, got {version!r}")

    artifacts = raw.get("artifacts")
    if artifacts is None:
        artifacts = []
    if not isinstance(artifacts, list):
        raise ValueError("artifacts must be a list")
    decoded = [_decode_artifact(entry) for entry in artifacts]

    if version != SCHEMA_VERSION:
        raise SchemaVersionMismatchError()
    return Index(schema_version=version, artifacts=decoded)


def _escape_html(text: str) -> str:
    return (
        text.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def encode(index: Index) -> bytes:
    """Serialize ``index`` to compact JSON; empty tags and digests are left out."""
    artifacts = None
    if index.artifacts:
        artifacts = []
        for artifact in index.artifacts:
            entry = {"repository": artifact.repository}
            if artifact.tag:
                entry["tag"] = artifact.tag
            if artifact.digest:
                entry["digest"] = artifact.digest
            artifacts.append(entry)
    document = {"schemaVersion": index.schema_version, "artifacts": artifacts}
    text = json.dumps(document, separators=(",", ":"), ensure_ascii=False)
    return _escape_html(text).encode("utf-8")