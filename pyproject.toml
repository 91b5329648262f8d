[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dfdindex"
version = "0.1.0"
description = "Index server for a distributed peer-to-peer file downloader, with replicated SQLite storage and leader election"
requires-python = ">=3.10"
dependencies = []
keywords = ["peer-to-peer", "file-sharing", "index-server", "sqlite", "leader-election", "replication"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
    "Topic :: Database",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
dfdindex = "dfdindex.server:main"

[tool.hatch.build.targets.wheel]
packages = ["dfdindex"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
