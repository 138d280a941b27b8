"""Common Transport Format archives, artifact indexes, blobs and legacy artifact sets."""

__version__ = "0.1.0"
__all__ = ["blob", "filesystem", "index", "cancellation", "store", "archive", "ctf", "artifact_set"]