"""datahaven CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from datahaven.cli.hash import hash_cmd
from datahaven.cli.ingest import ingest_cmd
from datahaven.cli.init import init_cmd


def _version() -> str:
    try:
        return importlib.metadata.version("datahaven")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"datahaven {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="datahaven",
    help=(
        "datahaven — content-addressed file backup.\n\n"
        "  datahaven ingest DIR  Index file metadata in MongoDB and upload bodies to S3.\n"
        "  datahaven hash FILE   Print the content fingerprint used as the object key."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """datahaven — content-addressed file backup."""


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("hash")(hash_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed datahaven version."""
    typer.echo(f"datahaven {_version()}")


if __name__ == "__main__":
    app()
