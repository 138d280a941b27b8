[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ocmctf"
version = "0.1.0"
description = "Read, write and archive Common Transport Format (CTF) archives and binary blobs"
requires-python = ">=3.10"
dependencies = []
keywords = ["ctf", "oci", "blob", "archive", "tar", "content-addressable"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Archiving :: Packaging",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ocmctf"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
