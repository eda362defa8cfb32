"""Tree scanning and content fingerprinting."""

from datahaven.scan.fingerprint import hash_file, hash_stream
from datahaven.scan.scanner import ScanOutcome, TreeScanner, iter_records

__all__ = [
    "ScanOutcome",
    "TreeScanner",
    "hash_file",
    "hash_stream",
    "iter_records",
]
