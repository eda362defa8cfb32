"""Content fingerprints: SHA-256 over the full byte stream.

Output format is ``"<algorithm>:<lowercase hex>"`` so the scheme is
self-describing. The fingerprint is also the object-store key of the blob.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import BinaryIO

from datahaven.errors import HashError

ALGORITHM = "sha256"
SEPARATOR = ":"
_BLOCK_SIZE = 65536


def hash_stream(stream: BinaryIO, chunk_size: int = _BLOCK_SIZE, name: str = "<stream>") -> str:
    """Return the fingerprint of everything readable from *stream*.

    The stream is consumed in *chunk_size* blocks; memory use does not depend
    on content length.

    Raises:
        HashError: If reading fails at any point. No partial digest escapes.
    """
    h = hashlib.new(ALGORITHM)
    try:
        for block in iter(lambda: stream.read(chunk_size), b""):
            h.update(block)
    except OSError as exc:
        raise HashError(name, exc.strerror or str(exc)) from exc
    return f"{ALGORITHM}{SEPARATOR}{h.hexdigest()}"


def hash_file(path: str | Path, chunk_size: int = _BLOCK_SIZE) -> str:
    """Return the fingerprint of the file at *path*.

    Raises:
        HashError: If the file cannot be opened or read to the end.
    """
    try:
        fh = open(path, "rb")
    except OSError as exc:
        raise HashError(str(path), exc.strerror or str(exc)) from exc
    with fh:
        return hash_stream(fh, chunk_size=chunk_size, name=str(path))
