"""datahaven ingest — scan a tree into MongoDB + S3.

  1. Load datahaven.yaml (fatal on error)
  2. Connect to the metadata store (fatal on error)
  3. Run the pipeline: scan → hash → persist → upload
  4. Print an accurate summary; exit 1 if anything was skipped or failed

--dry-run swaps both stores for in-memory ones; nothing leaves the machine.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from datahaven.cli.errors import (
    err_config,
    err_mongo_connection,
    err_root_not_dir,
    err_scan_aborted,
    warn_items_failed,
)
from datahaven.cli.logs import configure_logging
from datahaven.config import DatahavenConfig, load_config
from datahaven.db.sink import MemoryMetadataSink, MetadataSink, MongoMetadataSink
from datahaven.errors import ConfigError, StoreConnectionError
from datahaven.pipeline import IngestPipeline, IngestReport
from datahaven.scan.scanner import ScanOutcome
from datahaven.store.uploader import BlobUploader, MemoryBlobUploader, S3BlobUploader

console = Console()

EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_FATAL = 2


def ingest_cmd(
    root: Annotated[Path, typer.Argument(help="Directory tree to ingest.")],
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to datahaven.yaml."),
    ] = None,
    collection: Annotated[
        str | None,
        typer.Option("--collection", help="Metadata collection (overrides config)."),
    ] = None,
    bucket: Annotated[
        str | None,
        typer.Option("--bucket", help="Target bucket (overrides config)."),
    ] = None,
    workers: Annotated[
        int | None,
        typer.Option("--workers", min=1, help="Concurrent uploads (overrides config)."),
    ] = None,
    queue_size: Annotated[
        int | None,
        typer.Option("--queue-size", min=1, help="Scanner queue capacity (overrides config)."),
    ] = None,
    retries: Annotated[
        int | None,
        typer.Option("--retries", min=0, help="S3 request retries per upload (overrides config)."),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Scan and hash only; use in-memory stores."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log every file."),
    ] = False,
) -> None:
    """Fingerprint every file under ROOT, index its metadata and upload its content."""
    configure_logging(verbose)

    if not root.is_dir():
        console.print(err_root_not_dir(str(root)))
        raise typer.Exit(EXIT_FATAL)

    try:
        cfg = DatahavenConfig() if dry_run and config is None else load_config(config)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(EXIT_FATAL)

    _apply_overrides(cfg, collection, bucket, workers, queue_size, retries)

    try:
        sink, uploader = _open_stores(cfg, dry_run=dry_run)
    except StoreConnectionError as exc:
        console.print(err_mongo_connection(str(exc)))
        raise typer.Exit(EXIT_FATAL)

    try:
        report = _run(cfg, sink, uploader, root)
    finally:
        sink.close()

    _show_summary(root, report, dry_run=dry_run)

    if report.scan_error:
        console.print(err_scan_aborted(report.scan_error))
    if not report.ok:
        if report.skipped or report.persist_failed or report.upload_failed:
            console.print(
                warn_items_failed(report.skipped, report.persist_failed, report.upload_failed)
            )
        raise typer.Exit(EXIT_INCOMPLETE)


# ------------------------------------------------------------------
# Wiring
# ------------------------------------------------------------------


def _apply_overrides(
    cfg: DatahavenConfig,
    collection: str | None,
    bucket: str | None,
    workers: int | None,
    queue_size: int | None,
    retries: int | None,
) -> None:
    """CLI flags take precedence over datahaven.yaml."""
    if collection:
        cfg.pipeline.collection = collection
    if bucket:
        cfg.s3.bucket = bucket
    if workers is not None:
        cfg.pipeline.upload_workers = workers
    if queue_size is not None:
        cfg.pipeline.queue_size = queue_size
    if retries is not None:
        cfg.pipeline.upload_retries = retries


def _open_stores(cfg: DatahavenConfig, dry_run: bool) -> tuple[MetadataSink, BlobUploader]:
    if dry_run:
        return MemoryMetadataSink(), MemoryBlobUploader()
    sink = MongoMetadataSink(cfg.mongodb)
    return sink, S3BlobUploader(cfg.s3, retries=cfg.pipeline.upload_retries)


def _run(
    cfg: DatahavenConfig, sink: MetadataSink, uploader: BlobUploader, root: Path
) -> IngestReport:
    pipeline = IngestPipeline.from_config(cfg, sink, uploader)
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
        console=console,
    ) as prog:
        task = prog.add_task("Scanning…", total=None)

        def _on_outcome(outcome: ScanOutcome) -> None:
            prog.update(task, description=f"Scanning… {escape(outcome.path)}")

        return pipeline.run(root, on_outcome=_on_outcome)


# ------------------------------------------------------------------
# Summary
# ------------------------------------------------------------------


def _show_summary(root: Path, report: IngestReport, dry_run: bool) -> None:
    title = f"Ingest of {escape(str(root))}" + (" (dry run)" if dry_run else "")
    if report.cancelled:
        title += " — cancelled"
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Stage")
    table.add_column("Count", justify="right")
    table.add_row("Files attempted", str(report.scanned))
    table.add_row("Skipped (unreadable)", _colour(report.skipped))
    table.add_row("Metadata saved", str(report.persisted))
    table.add_row("Metadata failed", _colour(report.persist_failed))
    table.add_row("Blobs uploaded", str(report.uploaded))
    table.add_row("Uploads failed", _colour(report.upload_failed))
    if report.upload_pending:
        table.add_row("Uploads not started", _colour(report.upload_pending))
    console.print(table)

    for label, paths in (
        ("skipped", report.skipped_paths),
        ("not indexed", report.persist_failed_paths),
        ("not uploaded", report.upload_failed_paths),
    ):
        for path in paths:
            console.print(f"  [red]✗[/] {label}: {escape(path)}")

    if report.ok:
        console.print(f"[green]✓[/] {report.persisted} files indexed and uploaded")


def _colour(n: int) -> str:
    return f"[red]{n}[/]" if n else "0"
