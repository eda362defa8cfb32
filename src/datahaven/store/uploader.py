"""Blob uploaders — move file bodies to an object store under their fingerprint.

``S3BlobUploader`` streams through boto3's managed transfer, which switches
to multipart above ``multipart_threshold``; memory use is bounded by
``multipart_chunksize`` regardless of file size.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import boto3
from boto3.exceptions import Boto3Error
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from datahaven.config import S3Cfg
from datahaven.errors import UploadError

log = logging.getLogger(__name__)


class BlobUploader(ABC):
    """Abstract object-store backend."""

    @abstractmethod
    def upload(self, bucket: str, key: str, path: str | Path) -> None:
        """Stream the file at *path* to *bucket* under *key*.

        Raises:
            UploadError: On any transport, store-side or local read failure.
        """


def make_s3_client(cfg: S3Cfg, retries: int = 3) -> Any:
    """Build a boto3 S3 client with static credentials from *cfg*.

    Transient failures are retried by botocore itself ("standard" mode,
    exponential backoff with jitter); *retries* counts attempts after the first.
    """
    botocfg = BotoConfig(
        retries={"max_attempts": retries + 1, "mode": "standard"},
        s3={"addressing_style": "path" if cfg.path_style else "auto"},
    )
    return boto3.client(
        "s3",
        region_name=cfg.region,
        endpoint_url=cfg.endpoint or None,
        aws_access_key_id=cfg.access_key or None,
        aws_secret_access_key=cfg.secret_key or None,
        config=botocfg,
    )


class S3BlobUploader(BlobUploader):
    """S3-compatible backend sharing one boto3 client across threads.

    Args:
        cfg: Region, endpoint, credentials and multipart sizing.
        retries: Retries per request, delegated to botocore.
        client: Pre-built S3 client (for testing).
    """

    def __init__(self, cfg: S3Cfg, retries: int = 3, client: Any = None) -> None:
        self._client = client if client is not None else make_s3_client(cfg, retries)
        self._transfer = TransferConfig(
            multipart_threshold=cfg.multipart_threshold,
            multipart_chunksize=cfg.multipart_chunksize,
        )

    def upload(self, bucket: str, key: str, path: str | Path) -> None:
        log.info("Uploading %s to s3://%s/%s", path, bucket, key)
        try:
            self._client.upload_file(str(path), bucket, key, Config=self._transfer)
        except (BotoCoreError, ClientError, Boto3Error, OSError) as exc:
            raise UploadError(bucket, key, str(exc)) from exc
        log.info("Uploaded s3://%s/%s", bucket, key)


class MemoryBlobUploader(BlobUploader):
    """In-process store: ``(bucket, key) -> bytes``."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self._lock = threading.Lock()

    def upload(self, bucket: str, key: str, path: str | Path) -> None:
        try:
            body = Path(path).read_bytes()
        except OSError as exc:
            raise UploadError(bucket, key, str(exc)) from exc
        with self._lock:
            self.objects[(bucket, key)] = body

    def get(self, bucket: str, key: str) -> bytes | None:
        with self._lock:
            return self.objects.get((bucket, key))


