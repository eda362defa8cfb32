"""Tree scanner — walks a directory and fingerprints every regular file.

Walk order is depth-first with entries sorted lexically inside each
directory. Directories are descended but never emitted; symlinks, FIFOs,
sockets and device nodes are ignored (``lstat`` semantics, links are not
followed).

Each visited regular file yields one ``ScanOutcome``:
  ok       — record built, fingerprint computed
  skipped  — the file could not be hashed; scan continues
  aborted  — a directory could not be listed or an entry could not be
             stat'ed; always the last outcome
"""

from __future__ import annotations

import logging
import os
import stat
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

from datahaven.db.models import FileMetadata
from datahaven.errors import ScanAbortError
from datahaven.scan.fingerprint import hash_file

log = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped"
STATUS_ABORTED = "aborted"


@dataclass(frozen=True)
class ScanOutcome:
    """Per-file result of the scan stage."""

    status: str
    path: str
    record: FileMetadata | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


class TreeScanner:
    """Lazy, single-pass walk of *root*.

    Args:
        root: Directory to walk.
        hasher: Fingerprint function, ``path -> "sha256:<hex>"``.
        cancel_event: When set, the walk stops before the next entry.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        hasher: Callable[[str], str] = hash_file,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.root = str(root)
        self._hasher = hasher
        self._cancel = cancel_event or threading.Event()
        self._started = False

    def outcomes(self) -> Iterator[ScanOutcome]:
        """Yield one outcome per regular file, then end.

        The sequence cannot be restarted; a second call raises RuntimeError.
        """
        if self._started:
            raise RuntimeError("TreeScanner is single-pass; create a new scanner")
        self._started = True
        try:
            yield from self._walk(self.root)
        except ScanAbortError as exc:
            log.error("%s", exc)
            yield ScanOutcome(status=STATUS_ABORTED, path=exc.path, error=exc)
        else:
            if not self._cancel.is_set():
                log.info("Scan of %s completed", self.root)

    def records(self) -> Iterator[FileMetadata]:
        """Yield only successfully fingerprinted records.

        Skipped files are dropped without a signal to the caller.

        Raises:
            ScanAbortError: If the directory walk fails.
        """
        for outcome in self.outcomes():
            if outcome.status == STATUS_ABORTED:
                raise outcome.error  # type: ignore[misc]
            if outcome.record is not None:
                yield outcome.record

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    def _walk(self, directory: str) -> Iterator[ScanOutcome]:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            raise ScanAbortError(directory, exc.strerror or str(exc)) from exc

        for entry in entries:
            if self._cancel.is_set():
                return
            path = entry.path
            try:
                st = os.lstat(path)
            except OSError as exc:
                raise ScanAbortError(path, exc.strerror or str(exc)) from exc

            if stat.S_ISDIR(st.st_mode):
                yield from self._walk(path)
                continue
            if not stat.S_ISREG(st.st_mode):
                log.debug("Ignoring non-regular entry %s", path)
                continue

            yield self._fingerprint(path, st)

    def _fingerprint(self, path: str, st: os.stat_result) -> ScanOutcome:
        try:
            content_hash = self._hasher(path)
        except OSError as exc:
            log.warning("Skipping %s: %s", path, exc)
            return ScanOutcome(status=STATUS_SKIPPED, path=path, error=exc)
        record = FileMetadata.from_stat(path, st, content_hash)
        return ScanOutcome(status=STATUS_OK, path=path, record=record)


def iter_records(root: str | Path) -> Iterator[FileMetadata]:
    """Shortcut for ``TreeScanner(root).records()``."""
    return TreeScanner(root).records()
