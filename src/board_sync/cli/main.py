"""board-sync CLI main entry point."""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Annotated

import typer

from board_sync import __version__
from board_sync.cli._helpers import configure_logging, open_queue, run_async, track
from board_sync.core.pending_write import CreateWrite, PendingWrite, UpdateWrite
from board_sync.storage.persistence import HttpObjectPersistence
from board_sync.store.object_store import ObjectStore
from board_sync.sync.engine import FlushResult, ObjectSyncEngine
from board_sync.utils.config import get_config

app = typer.Typer(
    name="bsync",
    help="board-sync - inspect and replay offline board writes",
    no_args_is_help=True,
)

pending_app = typer.Typer(help="Durable offline write queue")
app.add_typer(pending_app, name="pending")


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log debug output to stderr")
    ] = False,
) -> None:
    configure_logging(verbose)


def _describe(write: PendingWrite) -> str:
    if isinstance(write, CreateWrite):
        return f"create  {write.object_id} ({write.object.type})"
    if isinstance(write, UpdateWrite):
        fields = ", ".join(sorted(write.changes))
        return f"update  {write.object_id} [{fields}]"
    return f"delete  {write.object_id}"


@pending_app.command("list")
def pending_list(
    board_id: Annotated[str, typer.Argument(help="Board id")],
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List queued writes for a board, oldest first.

    Examples:
        bsync pending list board-1
        bsync pending list board-1 --json
    """

    async def _list() -> list[PendingWrite]:
        queue = await open_queue(get_config())
        return await queue.read_all(board_id)

    writes = run_async(_list())

    if json_output:
        typer.echo(json.dumps([w.to_dict() for w in writes], indent=2))
        return
    if not writes:
        typer.secho(f"No pending writes for board {board_id}.", fg=typer.colors.GREEN)
        return
    typer.echo(f"{len(writes)} pending write(s) for board {board_id}:")
    for index, write in enumerate(writes, start=1):
        typer.echo(f"  {index:>3}. {_describe(write)}")


@pending_app.command("clear")
def pending_clear(
    board_id: Annotated[str, typer.Argument(help="Board id")],
    force: Annotated[bool, typer.Option("--force", "-f", help="Skip confirmation")] = False,
) -> None:
    """Discard every queued write for a board.

    Examples:
        bsync pending clear board-1
        bsync pending clear board-1 --force
    """
    if not force and not typer.confirm(f"Discard all pending writes for board {board_id}?"):
        raise typer.Exit(1)

    async def _clear() -> int:
        queue = await open_queue(get_config())
        count = await queue.count(board_id)
        await queue.clear(board_id)
        return count

    removed = run_async(_clear())
    typer.secho(f"Removed {removed} pending write(s).", fg=typer.colors.GREEN)


@pending_app.command("flush")
def pending_flush(
    board_id: Annotated[str, typer.Argument(help="Board id")],
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Replay queued writes against the REST API, stopping at the first failure.

    Broadcasts are not sent from the CLI; open clients pick the changes up
    on their next reconcile.

    Examples:
        bsync pending flush board-1
    """
    config = get_config()

    async def _flush() -> FlushResult:
        queue = await open_queue(config)
        persistence = track(
            HttpObjectPersistence(
                config.api_url, token=config.api_token, timeout=config.request_timeout
            )
        )
        engine = ObjectSyncEngine(board_id, ObjectStore(), queue, persistence)
        try:
            return await engine.flush_pending_writes()
        finally:
            await engine.close()

    result = run_async(_flush())

    if json_output:
        typer.echo(json.dumps(asdict(result), indent=2))
    elif result.halted:
        typer.secho(
            f"Replayed {result.replayed}, halted with {result.remaining} remaining: {result.error}",
            fg=typer.colors.RED,
        )
    else:
        typer.secho(f"Replayed {result.replayed} pending write(s).", fg=typer.colors.GREEN)

    if result.halted:
        raise typer.Exit(1)


@app.command("config")
def show_config(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show the effective configuration.

    Examples:
        bsync config
    """
    config = get_config()
    data = asdict(config)
    data["api_token"] = "configured" if config.api_token else None
    data["pending_db_path"] = str(config.pending_db_path)

    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return
    for key, value in data.items():
        typer.echo(f"{key}: {value if value is not None else 'not set'}")


@app.command("version")
def version() -> None:
    """Show the installed version."""
    typer.echo(f"board-sync {__version__}")


if __name__ == "__main__":
    app()
