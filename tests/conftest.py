"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from datahaven.db.sink import MemoryMetadataSink
from datahaven.store.uploader import MemoryBlobUploader


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    """Small tree: two files at the top, one nested, one empty, one duplicate."""
    root = tmp_path / "tree"
    (root / "sub" / "deeper").mkdir(parents=True)
    (root / "a.txt").write_bytes(b"hello")
    (root / "b.bin").write_bytes(b"\x00\x01\x02" * 1000)
    (root / "sub" / "c.txt").write_bytes(b"nested content")
    (root / "sub" / "deeper" / "dup.txt").write_bytes(b"hello")
    (root / "sub" / "empty").write_bytes(b"")
    return root


@pytest.fixture
def sink() -> MemoryMetadataSink:
    return MemoryMetadataSink()


@pytest.fixture
def uploader() -> MemoryBlobUploader:
    return MemoryBlobUploader()
