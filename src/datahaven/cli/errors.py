"""datahaven rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from datahaven.cli.errors import err_config
    console.print(err_config(str(exc)))
    raise typer.Exit(2)
"""

from __future__ import annotations

from rich.markup import escape


def err_config(detail: str) -> str:
    """Configuration missing or invalid."""
    return (
        f"[red]Error:[/] Invalid or missing configuration.\n"
        f"  {escape(detail)}\n"
        "  Run:  datahaven init  to create datahaven.yaml, or pass --config PATH"
    )


def err_mongo_connection(detail: str) -> str:
    """Metadata store unreachable at startup."""
    return (
        f"[red]Error:[/] Cannot reach the metadata store.\n"
        f"  {escape(detail)}\n"
        "  Check mongodb.host / mongodb.port in datahaven.yaml, or set:\n"
        "    export DATAHAVEN_MONGODB_USER=... DATAHAVEN_MONGODB_PASSWORD=..."
    )


def err_root_not_dir(root: str) -> str:
    """Scan root is not a directory."""
    return (
        f"[red]Error:[/] Not a directory: '{escape(root)}'\n"
        "  Use:  datahaven ingest <DIRECTORY>"
    )


def err_scan_aborted(detail: str) -> str:
    """Directory walk failed part-way."""
    return (
        f"[red]Error:[/] Scan aborted: {escape(detail)}\n"
        "  Fix the directory permissions and re-run:  datahaven ingest <DIRECTORY>"
    )


def err_hash_failed(path: str, detail: str) -> str:
    """A single file could not be fingerprinted."""
    return (
        f"[red]Error:[/] Cannot hash '{escape(path)}': {escape(detail)}\n"
        "  Check the file exists and is readable, then re-run:  datahaven hash <FILE>"
    )


def warn_items_failed(skipped: int, persist_failed: int, upload_failed: int) -> str:
    """Run finished but some items did not make it into both stores."""
    return (
        f"[yellow]⚠[/] {skipped} skipped, {persist_failed} not indexed, "
        f"{upload_failed} not uploaded.\n"
        "  Re-run:  datahaven ingest <DIRECTORY> --verbose  to see per-file errors"
    )
