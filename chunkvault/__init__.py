"""Chunk hashing, compression, encryption and threaded chunk transfer for deduplicating backups."""

__version__ = "0.1.0"

__all__ = [
    "chunk",
    "config",
    "downloader",
    "entry",
    "operator",
    "uploader",
]