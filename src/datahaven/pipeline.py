"""Ingestion pipeline — scan → hash → persist → upload.

One producer thread walks the tree and feeds scan outcomes into a bounded
queue. The calling thread consumes them in walk order and persists each
record. Every persisted record dispatches one upload to a fixed-size worker
pool; dispatch blocks while ``upload_workers`` uploads are in flight, so
nothing piles up behind the pool. All uploads are joined before ``run()``
returns.

Per-item failures (unreadable file, rejected insert, failed upload) are
counted in the returned ``IngestReport`` and never stop the pipeline.

    IDLE → SCANNING → (PERSISTING → DISPATCHING → SCANNING)* → DRAINING → DONE
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from datahaven.config import DatahavenConfig
from datahaven.db.models import UPLOAD_STATUS_FAILED, UPLOAD_STATUS_OK, FileMetadata, UploadOutcome
from datahaven.db.sink import MetadataSink
from datahaven.errors import PersistenceError, UploadError
from datahaven.scan.scanner import STATUS_ABORTED, STATUS_SKIPPED, ScanOutcome, TreeScanner
from datahaven.store.uploader import BlobUploader

log = logging.getLogger(__name__)

_POLL_SECONDS = 0.1
_UPLOADS_SUFFIX = ".uploads"


class PipelineState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PERSISTING = "persisting"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    DONE = "done"


class _EndOfScan:
    """Queue sentinel: the producer has finished."""


_END = _EndOfScan()


@dataclass
class IngestReport:
    """Accurate summary of one pipeline run."""

    scanned: int = 0
    persisted: int = 0
    persist_failed: int = 0
    skipped: int = 0
    dispatched: int = 0
    uploaded: int = 0
    upload_failed: int = 0
    skipped_paths: list[str] = field(default_factory=list)
    persist_failed_paths: list[str] = field(default_factory=list)
    upload_failed_paths: list[str] = field(default_factory=list)
    scan_error: str | None = None
    cancelled: bool = False
    state: PipelineState = PipelineState.IDLE

    @property
    def upload_pending(self) -> int:
        """Persisted records whose upload never ran (only non-zero after cancel)."""
        return self.persisted - self.uploaded - self.upload_failed

    @property
    def ok(self) -> bool:
        return (
            not self.cancelled
            and self.scan_error is None
            and self.skipped == 0
            and self.persist_failed == 0
            and self.upload_failed == 0
        )


class IngestPipeline:
    """Wire a tree scanner to a metadata sink and a blob uploader.

    Args:
        sink: Metadata store; records go to *collection*.
        uploader: Blob store; objects go to *bucket* under ``record.hash``.
            Retries, if any, are the uploader's business.
        bucket: Target bucket for file bodies.
        collection: Target collection for metadata records.
        upload_workers: Maximum number of uploads in flight.
        queue_size: Capacity of the scanner → coordinator queue.
        record_upload_outcomes: Append an ``UploadOutcome`` per upload to
            ``<collection>.uploads``.
        scanner_factory: ``(root, cancel_event=...) -> TreeScanner``.
    """

    def __init__(
        self,
        sink: MetadataSink,
        uploader: BlobUploader,
        *,
        bucket: str,
        collection: str = "1",
        upload_workers: int = 4,
        queue_size: int = 16,
        record_upload_outcomes: bool = True,
        scanner_factory: Callable[..., TreeScanner] = TreeScanner,
    ) -> None:
        if upload_workers < 1:
            raise ValueError("upload_workers must be >= 1")
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self._sink = sink
        self._uploader = uploader
        self.bucket = bucket
        self.collection = collection
        self.upload_workers = upload_workers
        self.queue_size = queue_size
        self._record_outcomes = record_upload_outcomes
        self._scanner_factory = scanner_factory

        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(upload_workers)
        self._state = PipelineState.IDLE
        self._report = IngestReport()

    @classmethod
    def from_config(
        cls, cfg: DatahavenConfig, sink: MetadataSink, uploader: BlobUploader
    ) -> IngestPipeline:
        """Build a pipeline from the ``s3`` and ``pipeline`` config sections."""
        p = cfg.pipeline
        return cls(
            sink,
            uploader,
            bucket=cfg.s3.bucket,
            collection=p.collection,
            upload_workers=p.upload_workers,
            queue_size=p.queue_size,
            record_upload_outcomes=p.record_upload_outcomes,
        )

    @property
    def state(self) -> PipelineState:
        return self._state

    def cancel(self) -> None:
        """Stop scanning, stop persisting, and drop uploads that have not started."""
        log.warning("Cancellation requested")
        self._cancel.set()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        root: str | Path,
        on_outcome: Callable[[ScanOutcome], None] | None = None,
    ) -> IngestReport:
        """Ingest every regular file under *root*; return the run summary.

        Always reaches ``DONE``. A ``KeyboardInterrupt`` while consuming is
        turned into a cancellation and the partial report is returned; any
        other unexpected error cancels the run, drains it, and propagates.

        Raises:
            RuntimeError: If the pipeline has already been run.
        """
        if self._state is not PipelineState.IDLE:
            raise RuntimeError("IngestPipeline.run() may only be called once")

        report = self._report
        handoff: queue.Queue[ScanOutcome | _EndOfScan] = queue.Queue(maxsize=self.queue_size)
        scanner = self._scanner_factory(root, cancel_event=self._cancel)
        producer = threading.Thread(
            target=self._produce,
            args=(scanner, handoff),
            name="datahaven-scanner",
            daemon=True,
        )

        log.info(
            "Ingesting %s → collection %r, bucket %r (%d upload workers, queue %d)",
            root, self.collection, self.bucket, self.upload_workers, self.queue_size,
        )
        self._set_state(PipelineState.SCANNING)
        producer.start()

        executor = ThreadPoolExecutor(
            max_workers=self.upload_workers, thread_name_prefix="datahaven-upload"
        )
        try:
            self._consume(handoff, executor, on_outcome)
        except KeyboardInterrupt:
            self.cancel()
        except Exception:
            log.exception("Ingest of %s stopped by an unexpected error", root)
            self.cancel()
            raise
        finally:
            self._set_state(PipelineState.DRAINING)
            log.info("Waiting for in-flight uploads")
            executor.shutdown(wait=True, cancel_futures=self._cancel.is_set())
            producer.join()
            report.cancelled = self._cancel.is_set()
            self._set_state(PipelineState.DONE)

        log.info(
            "Ingest finished: %d scanned, %d persisted, %d uploaded, %d skipped, "
            "%d persist failures, %d upload failures",
            report.scanned, report.persisted, report.uploaded, report.skipped,
            report.persist_failed, report.upload_failed,
        )
        return report

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    def _produce(self, scanner: TreeScanner, handoff: queue.Queue) -> None:
        try:
            for outcome in scanner.outcomes():
                if not self._put(handoff, outcome):
                    return
        except Exception as exc:
            log.exception("Scanner failed")
            self._put(handoff, ScanOutcome(status=STATUS_ABORTED, path=scanner.root, error=exc))
        self._put(handoff, _END)

    def _put(self, handoff: queue.Queue, item: ScanOutcome | _EndOfScan) -> bool:
        """Block until *item* is queued; False if cancelled first."""
        while not self._cancel.is_set():
            try:
                handoff.put(item, timeout=_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    def _consume(
        self,
        handoff: queue.Queue,
        executor: ThreadPoolExecutor,
        on_outcome: Callable[[ScanOutcome], None] | None,
    ) -> None:
        report = self._report
        while not self._cancel.is_set():
            try:
                item = handoff.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            if isinstance(item, _EndOfScan):
                return

            if item.status == STATUS_ABORTED:
                report.scan_error = str(item.error)
            elif item.status == STATUS_SKIPPED:
                report.scanned += 1
                report.skipped += 1
                report.skipped_paths.append(item.path)
            elif item.record is not None:
                report.scanned += 1
                if self._persist(item.record):
                    self._dispatch(executor, item.record)
                self._set_state(PipelineState.SCANNING)

            if on_outcome is not None:
                try:
                    on_outcome(item)
                except Exception:
                    log.exception("Progress callback failed for %s", item.path)

    def _persist(self, record: FileMetadata) -> bool:
        self._set_state(PipelineState.PERSISTING)
        log.info("Saving metadata for %s", record.path)
        try:
            self._sink.insert(self.collection, record)
        except PersistenceError as exc:
            log.error("Metadata for %s not saved: %s", record.path, exc)
            self._persist_failed(record)
            return False
        except Exception:
            log.exception("Unexpected error saving metadata for %s", record.path)
            self._persist_failed(record)
            return False
        self._report.persisted += 1
        return True

    def _persist_failed(self, record: FileMetadata) -> None:
        self._report.persist_failed += 1
        self._report.persist_failed_paths.append(record.path)

    def _dispatch(self, executor: ThreadPoolExecutor, record: FileMetadata) -> None:
        """Hand *record* to the upload pool, waiting for a free slot."""
        self._set_state(PipelineState.DISPATCHING)
        while not self._slots.acquire(timeout=_POLL_SECONDS):
            if self._cancel.is_set():
                return
        fut = executor.submit(self._upload, record)
        fut.add_done_callback(self._release_slot)
        with self._lock:
            self._report.dispatched += 1

    def _release_slot(self, _fut: Future[None]) -> None:
        self._slots.release()

    # ------------------------------------------------------------------
    # Upload workers
    # ------------------------------------------------------------------

    def _upload(self, record: FileMetadata) -> None:
        report = self._report
        try:
            self._uploader.upload(self.bucket, record.hash, record.path)
        except UploadError as exc:
            log.error("Upload of %s failed: %s", record.path, exc.reason)
            self._upload_failed(record, exc.reason)
            return
        except Exception as exc:
            log.exception("Unexpected error uploading %s", record.path)
            self._upload_failed(record, repr(exc))
            return

        with self._lock:
            report.uploaded += 1
        self._record_outcome(record, UPLOAD_STATUS_OK, None)

    def _upload_failed(self, record: FileMetadata, error: str) -> None:
        with self._lock:
            self._report.upload_failed += 1
            self._report.upload_failed_paths.append(record.path)
        self._record_outcome(record, UPLOAD_STATUS_FAILED, error)

    def _record_outcome(self, record: FileMetadata, status: str, error: str | None) -> None:
        if not self._record_outcomes:
            return
        outcome = UploadOutcome(
            hash=record.hash,
            path=record.path,
            bucket=self.bucket,
            status=status,
            error=error,
            finished_at=time.time_ns(),
        )
        try:
            self._sink.insert(self.collection + _UPLOADS_SUFFIX, outcome)
        except PersistenceError as exc:
            log.warning("Upload outcome for %s not recorded: %s", record.path, exc)

    def _set_state(self, state: PipelineState) -> None:
        self._state = state
        self._report.state = state
