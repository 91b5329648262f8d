"""Index server for a distributed peer-to-peer file downloader."""

__version__ = "0.1.0"