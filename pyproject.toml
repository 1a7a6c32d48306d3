[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sandstore"
version = "0.1.0"
description = "A small distributed file store with chunked storage, chunk replication and Raft-replicated metadata"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "distributed-storage",
    "raft",
    "consensus",
    "replication",
    "file-store",
    "chunks",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
sandstore-raft = "sandstore.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["sandstore"]

[tool.hatch.build.targets.sdist]
include = ["sandstore", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
