"""Error taxonomy for the datahaven ingestion pipeline.

Fatal at startup:   ConfigError, StoreConnectionError
Aborts the scan:    ScanAbortError
Per item (isolated): HashError, PersistenceError, UploadError
"""

from __future__ import annotations


class DatahavenError(Exception):
    """Base class for all datahaven errors."""


class ConfigError(DatahavenError, ValueError):
    """Configuration is missing, unparseable, or contains an invalid value."""


class StoreConnectionError(DatahavenError, ConnectionError):
    """A session with the metadata store could not be established."""


class ScanAbortError(DatahavenError):
    """The directory walk failed for a reason unrelated to a single file."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"scan aborted at '{path}': {reason}")
        self.path = path
        self.reason = reason


class HashError(DatahavenError, OSError):
    """A file could not be read to completion while fingerprinting it."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"cannot hash '{path}': {reason}")
        self.path = path
        self.reason = reason


class PersistenceError(DatahavenError):
    """A metadata document could not be written to the document store."""


class UploadError(DatahavenError):
    """A blob could not be transferred to the object store."""

    def __init__(self, bucket: str, key: str, reason: str) -> None:
        super().__init__(f"upload to s3://{bucket}/{key} failed: {reason}")
        self.bucket = bucket
        self.key = key
        self.reason = reason
