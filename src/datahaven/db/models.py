"""Domain models for the datahaven metadata index."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

UPLOAD_STATUS_OK = "uploaded"
UPLOAD_STATUS_FAILED = "failed"


@dataclass(frozen=True)
class FileMetadata:
    """One ingested file, as recorded in the metadata index.

    ``hash`` is derived from content only and doubles as the object-store key
    of the file body. Records are never updated; a re-scan of a changed file
    produces a new record.
    """

    name: str
    path: str
    ctime: int
    mtime: int
    atime: int
    uid: int
    gid: int
    size: int
    hash: str

    @classmethod
    def from_stat(cls, path: str | Path, st: os.stat_result, content_hash: str) -> FileMetadata:
        """Build a record from an ``lstat`` result and a precomputed fingerprint."""
        p = str(path)
        return cls(
            name=os.path.basename(p),
            path=p,
            ctime=st.st_ctime_ns,
            mtime=st.st_mtime_ns,
            atime=st.st_atime_ns,
            uid=st.st_uid,
            gid=st.st_gid,
            size=st.st_size,
            hash=content_hash,
        )

    def to_document(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UploadOutcome:
    """Result of one blob upload, appended next to the metadata records.

    Joined to ``FileMetadata`` by ``hash``.
    """

    hash: str
    path: str
    bucket: str
    status: str
    error: str | None = None
    finished_at: int = 0

    @property
    def ok(self) -> bool:
        return self.status == UPLOAD_STATUS_OK

    def to_document(self) -> dict[str, Any]:
        return asdict(self)
