"""Tests for the ingestion pipeline coordinator."""

from __future__ import annotations

import hashlib
import os
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import bson
import pytest

from datahaven.config import DatahavenConfig, MongoCfg
from datahaven.db.sink import MemoryMetadataSink, MongoMetadataSink
from datahaven.errors import HashError, PersistenceError, UploadError
from datahaven.pipeline import IngestPipeline, PipelineState
from datahaven.scan.fingerprint import hash_file
from datahaven.scan.scanner import TreeScanner
from datahaven.store.uploader import BlobUploader, MemoryBlobUploader


def _sha(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def _pipeline(sink, uploader, **kwargs) -> IngestPipeline:
    kwargs.setdefault("bucket", "datahaven")
    return IngestPipeline(sink, uploader, **kwargs)


class _FailingSink(MemoryMetadataSink):
    """Rejects inserts for paths ending in one of *bad_suffixes*."""

    def __init__(self, *bad_suffixes: str) -> None:
        super().__init__()
        self.bad_suffixes = bad_suffixes

    def insert(self, collection, document) -> None:
        path = getattr(document, "path", "")
        if collection == "1" and path.endswith(self.bad_suffixes):
            raise PersistenceError(f"write concern error for {path}")
        super().insert(collection, document)


class _FailingUploader(MemoryBlobUploader):
    def __init__(self, *bad_names: str) -> None:
        super().__init__()
        self.bad_names = bad_names
        self.calls = 0

    def upload(self, bucket, key, path) -> None:
        self.calls += 1
        if os.path.basename(str(path)) in self.bad_names:
            raise UploadError(bucket, key, "connection reset")
        super().upload(bucket, key, path)


class _SlowUploader(BlobUploader):
    """Tracks peak concurrency; each upload takes *delay* seconds."""

    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.done: list[str] = []
        self._lock = threading.Lock()

    def upload(self, bucket, key, path) -> None:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
            self.done.append(str(path))


def _many_files(root: Path, n: int) -> Path:
    root.mkdir(exist_ok=True)
    for i in range(n):
        (root / f"f{i:03d}.txt").write_text(f"file {i}")
    return root


# ------------------------------------------------------------------
# Happy path
# ------------------------------------------------------------------


def test_hello_end_to_end(tmp_path: Path, sink, uploader) -> None:
    (tmp_path / "a.txt").write_text("hello")
    report = _pipeline(sink, uploader).run(tmp_path)

    [doc] = sink.documents("1")
    assert doc["hash"] == _sha(b"hello")
    assert doc["size"] == 5
    assert uploader.get("datahaven", _sha(b"hello")) == b"hello"
    assert report.ok
    assert report.persisted == report.uploaded == 1


def test_every_file_persisted_in_walk_order(tree: Path, sink, uploader) -> None:
    report = _pipeline(sink, uploader).run(tree)
    paths = [d["path"] for d in sink.documents("1")]
    expected = [r.path for r in TreeScanner(tree).records()]
    assert paths == expected
    assert report.scanned == report.persisted == 5


def test_join_invariant_blob_key_equals_record_hash(tree: Path, sink, uploader) -> None:
    _pipeline(sink, uploader).run(tree)
    for doc in sink.documents("1"):
        assert uploader.get("datahaven", doc["hash"]) == Path(doc["path"]).read_bytes()


def test_identical_content_shares_one_blob(tree: Path, sink, uploader) -> None:
    report = _pipeline(sink, uploader).run(tree)
    hashes = [d["hash"] for d in sink.documents("1")]
    assert len(hashes) == 5
    assert len(set(hashes)) == 4
    assert len(uploader.objects) == 4
    assert report.uploaded == 5


def test_empty_tree_completes(tmp_path: Path, sink, uploader) -> None:
    pipeline = _pipeline(sink, uploader)
    report = pipeline.run(tmp_path)
    assert report.ok
    assert report.scanned == 0
    assert pipeline.state is PipelineState.DONE
    assert sink.documents("1") == []


def test_custom_collection_and_bucket(tmp_path: Path, sink, uploader) -> None:
    (tmp_path / "a.txt").write_text("hello")
    _pipeline(sink, uploader, collection="photos", bucket="archive").run(tmp_path)
    assert len(sink.documents("photos")) == 1
    assert uploader.get("archive", _sha(b"hello")) == b"hello"


def test_single_slot_queue(tree: Path, sink, uploader) -> None:
    report = _pipeline(sink, uploader, queue_size=1, upload_workers=1).run(tree)
    assert report.ok
    assert report.persisted == 5


# ------------------------------------------------------------------
# Per-item failure isolation
# ------------------------------------------------------------------


def test_persistence_failure_isolated(tree: Path, uploader) -> None:
    sink = _FailingSink("a.txt")
    report = _pipeline(sink, uploader).run(tree)
    assert report.persist_failed == 1
    assert report.persist_failed_paths == [str(tree / "a.txt")]
    assert report.persisted == 4
    assert not report.ok


def test_no_upload_without_persisted_record(tmp_path: Path, uploader) -> None:
    (tmp_path / "a.txt").write_text("only")
    sink = _FailingSink("a.txt")
    report = _pipeline(sink, uploader).run(tmp_path)
    assert report.dispatched == 0
    assert uploader.objects == {}


def test_skipped_files_counted(tree: Path, sink, uploader) -> None:
    def _hasher(path: str) -> str:
        if path.endswith("b.bin"):
            raise HashError(path, "Permission denied")
        return hash_file(path)

    def _factory(root, cancel_event=None):
        return TreeScanner(root, hasher=_hasher, cancel_event=cancel_event)

    report = _pipeline(sink, uploader, scanner_factory=_factory).run(tree)
    assert report.skipped == 1
    assert report.skipped_paths == [str(tree / "b.bin")]
    assert report.scanned == 5
    assert report.persisted == 4
    assert not report.ok


def test_upload_failure_counted_and_recorded(tree: Path, sink) -> None:
    uploader = _FailingUploader("c.txt")
    report = _pipeline(sink, uploader, upload_workers=1).run(tree)
    assert report.upload_failed == 1
    assert report.uploaded == 4
    assert report.upload_failed_paths == [str(tree / "sub" / "c.txt")]
    assert uploader.calls == 5

    outcomes = {d["path"]: d for d in sink.documents("1.uploads")}
    failed = outcomes[str(tree / "sub" / "c.txt")]
    assert failed["status"] == "failed"
    assert failed["hash"] == _sha(b"nested content")
    assert sum(1 for d in outcomes.values() if d["status"] == "uploaded") == 4


def test_upload_outcomes_can_be_disabled(tree: Path, sink, uploader) -> None:
    _pipeline(sink, uploader, record_upload_outcomes=False).run(tree)
    assert sink.documents("1.uploads") == []


def test_outcome_write_failure_does_not_change_counts(tmp_path: Path, uploader) -> None:
    class _NoOutcomes(MemoryMetadataSink):
        def insert(self, collection, document) -> None:
            if collection.endswith(".uploads"):
                raise PersistenceError("read-only")
            super().insert(collection, document)

    (tmp_path / "a.txt").write_text("x")
    report = _pipeline(_NoOutcomes(), uploader).run(tmp_path)
    assert report.uploaded == 1
    assert report.ok


def test_scan_abort_reported_pipeline_done(tmp_path: Path, sink, uploader) -> None:
    pipeline = _pipeline(sink, uploader)
    report = pipeline.run(tmp_path / "missing")
    assert report.scan_error is not None
    assert "missing" in report.scan_error
    assert pipeline.state is PipelineState.DONE
    assert not report.ok


def test_unexpected_scanner_error_becomes_scan_error(tmp_path: Path, sink, uploader) -> None:
    class _Broken(TreeScanner):
        def outcomes(self):
            raise RuntimeError("kaboom")
            yield  # pragma: no cover

    report = _pipeline(sink, uploader, scanner_factory=_Broken).run(tmp_path)
    assert report.scan_error == "kaboom"


def test_undecodable_file_name_does_not_stop_run(tmp_path: Path, uploader) -> None:
    try:
        with open(os.path.join(os.fsencode(tmp_path), b"bad\xff.txt"), "wb") as fh:
            fh.write(b"bad")
    except OSError:
        pytest.skip("filesystem rejects non-UTF-8 names")
    (tmp_path / "good.txt").write_text("good")

    client = MagicMock()
    client.__getitem__.return_value.__getitem__.return_value.insert_one.side_effect = bson.encode
    pipeline = _pipeline(MongoMetadataSink(MongoCfg(), client=client), uploader)
    report = pipeline.run(tmp_path)

    assert report.persist_failed == 1
    assert report.persist_failed_paths[0].endswith(".txt")
    assert report.persisted == 1
    assert report.uploaded == 1
    assert pipeline.state is PipelineState.DONE


def test_unexpected_sink_error_counted_as_persist_failure(tree: Path, uploader) -> None:
    class _Buggy(MemoryMetadataSink):
        def insert(self, collection, document) -> None:
            if collection == "1" and document.path.endswith("a.txt"):
                raise TypeError("not serializable")
            super().insert(collection, document)

    report = _pipeline(_Buggy(), uploader).run(tree)
    assert report.persist_failed == 1
    assert report.persisted == 4


def test_failing_progress_callback_ignored(tree: Path, sink, uploader) -> None:
    def _on_outcome(outcome) -> None:
        raise RuntimeError("display gone")

    pipeline = _pipeline(sink, uploader)
    report = pipeline.run(tree, on_outcome=_on_outcome)
    assert report.ok
    assert report.persisted == 5
    assert pipeline.state is PipelineState.DONE


def test_internal_error_drains_and_propagates(tree: Path, sink, uploader, monkeypatch) -> None:
    pipeline = _pipeline(sink, uploader, queue_size=1)

    def _boom(executor, record) -> None:
        raise RuntimeError("dispatch broke")

    monkeypatch.setattr(pipeline, "_dispatch", _boom)
    with pytest.raises(RuntimeError, match="dispatch broke"):
        pipeline.run(tree)
    assert pipeline.state is PipelineState.DONE
    assert not any(t.name == "datahaven-scanner" for t in threading.enumerate())


# ------------------------------------------------------------------
# Concurrency
# ------------------------------------------------------------------


def test_upload_concurrency_bounded(tmp_path: Path, sink) -> None:
    root = _many_files(tmp_path / "many", 20)
    uploader = _SlowUploader(delay=0.02)
    report = _pipeline(sink, uploader, upload_workers=3).run(root)
    assert uploader.peak <= 3
    assert report.uploaded == 20


def test_all_uploads_joined_before_return(tmp_path: Path, sink) -> None:
    root = _many_files(tmp_path / "many", 8)
    uploader = _SlowUploader(delay=0.05)
    report = _pipeline(sink, uploader, upload_workers=2).run(root)
    assert len(uploader.done) == 8
    assert uploader.active == 0
    assert report.uploaded == 8
    assert report.upload_pending == 0


def test_dispatch_backlog_bounded_by_workers(tmp_path: Path) -> None:
    root = _many_files(tmp_path / "many", 60)
    uploader = _SlowUploader(delay=0.01)
    backlog: list[int] = []

    class _Spy(MemoryMetadataSink):
        def insert(self, collection, document) -> None:
            if collection == "1":
                backlog.append(len(self.documents("1")) + 1 - len(uploader.done))
            super().insert(collection, document)

    report = _pipeline(_Spy(), uploader, upload_workers=2, queue_size=1).run(root)
    assert report.uploaded == 60
    assert max(backlog) <= 2 + 1


def test_scanner_held_back_by_slow_consumer(tmp_path: Path, uploader) -> None:
    root = _many_files(tmp_path / "many", 20)
    hashed: list[str] = []
    entered = threading.Event()
    release = threading.Event()

    def _hasher(path: str) -> str:
        hashed.append(path)
        return hash_file(path)

    def _factory(root, cancel_event=None):
        return TreeScanner(root, hasher=_hasher, cancel_event=cancel_event)

    class _Blocking(MemoryMetadataSink):
        def insert(self, collection, document) -> None:
            if collection == "1" and not entered.is_set():
                entered.set()
                release.wait(5)
            super().insert(collection, document)

    pipeline = _pipeline(_Blocking(), uploader, queue_size=1, scanner_factory=_factory)
    result: list = []
    runner = threading.Thread(target=lambda: result.append(pipeline.run(root)))
    runner.start()
    try:
        assert entered.wait(5)
        time.sleep(0.3)
        # one record held by the consumer, one in the queue, one waiting in put()
        assert len(hashed) <= 1 + 1 + 1
    finally:
        release.set()
        runner.join(10)
    assert result[0].persisted == 20


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------


def test_run_only_once(tmp_path: Path, sink, uploader) -> None:
    pipeline = _pipeline(sink, uploader)
    pipeline.run(tmp_path)
    with pytest.raises(RuntimeError):
        pipeline.run(tmp_path)


def test_state_transitions(tmp_path: Path, uploader) -> None:
    (tmp_path / "a.txt").write_text("x")
    seen: list[PipelineState] = []

    class _Spy(MemoryMetadataSink):
        def insert(self, collection, document) -> None:
            if collection == "1":
                seen.append(pipeline.state)
            super().insert(collection, document)

    pipeline = _pipeline(_Spy(), uploader)
    assert pipeline.state is PipelineState.IDLE
    pipeline.run(tmp_path)
    assert seen == [PipelineState.PERSISTING]
    assert pipeline.state is PipelineState.DONE


def test_each_record_dispatched_after_persisting(tmp_path: Path, sink, uploader) -> None:
    (tmp_path / "a.txt").write_text("x")
    states: list[PipelineState] = []

    class _Recording(IngestPipeline):
        def _set_state(self, state: PipelineState) -> None:
            states.append(state)
            super()._set_state(state)

    _Recording(sink, uploader, bucket="datahaven").run(tmp_path)
    assert states == [
        PipelineState.SCANNING,
        PipelineState.PERSISTING,
        PipelineState.DISPATCHING,
        PipelineState.SCANNING,
        PipelineState.DRAINING,
        PipelineState.DONE,
    ]


def test_cancel_stops_pipeline(tmp_path: Path, sink) -> None:
    root = _many_files(tmp_path / "many", 30)
    uploader = _SlowUploader(delay=0.05)
    pipeline = _pipeline(sink, uploader, upload_workers=1, queue_size=1)

    def _on_outcome(outcome) -> None:
        pipeline.cancel()

    report = pipeline.run(root, on_outcome=_on_outcome)
    assert report.cancelled
    assert not report.ok
    assert report.persisted == 1
    assert len(sink.documents("1")) == 1
    assert pipeline.state is PipelineState.DONE


def test_invalid_arguments() -> None:
    with pytest.raises(ValueError):
        IngestPipeline(MemoryMetadataSink(), MemoryBlobUploader(), bucket="b", upload_workers=0)
    with pytest.raises(ValueError):
        IngestPipeline(MemoryMetadataSink(), MemoryBlobUploader(), bucket="b", queue_size=0)


def test_from_config(sink, uploader) -> None:
    cfg = DatahavenConfig()
    cfg.s3.bucket = "archive"
    cfg.pipeline.collection = "photos"
    cfg.pipeline.upload_workers = 7
    cfg.pipeline.queue_size = 2
    pipeline = IngestPipeline.from_config(cfg, sink, uploader)
    assert pipeline.bucket == "archive"
    assert pipeline.collection == "photos"
    assert pipeline.upload_workers == 7
    assert pipeline.queue_size == 2
