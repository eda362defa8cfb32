"""datahaven init — write a template datahaven.yaml."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape

from datahaven.config import CONFIG_NAME, ensure_config

console = Console()


def init_cmd(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help="Where to write the config file."),
    ] = Path(CONFIG_NAME),
) -> None:
    """Create a datahaven.yaml template (mode 0600) if none exists."""
    existed = config.exists()
    path = ensure_config(config)
    if existed:
        console.print(f"[dim]↷ Config already exists, left unchanged: {escape(str(path))}[/]")
    else:
        console.print(f"[green]✓[/] Wrote {escape(str(path))}")
        console.print("  Fill in the s3 and mongodb credentials, then run:  datahaven ingest <DIRECTORY>")
