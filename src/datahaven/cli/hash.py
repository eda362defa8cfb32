"""datahaven hash — print content fingerprints without touching any store."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from datahaven.cli.errors import err_hash_failed
from datahaven.errors import HashError
from datahaven.scan.fingerprint import hash_file

console = Console()


def hash_cmd(
    files: Annotated[list[Path], typer.Argument(help="Files to fingerprint.")],
) -> None:
    """Print ``sha256:<hex>  PATH`` for each FILE (the object-store key it would get)."""
    failed = False
    for path in files:
        try:
            digest = hash_file(path)
        except HashError as exc:
            console.print(err_hash_failed(str(path), exc.reason))
            failed = True
            continue
        typer.echo(f"{digest}  {path}")
    if failed:
        raise typer.Exit(1)
