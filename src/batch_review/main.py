"""CLI entrypoint for batch-review."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path

import typer
import uvicorn

app = typer.Typer(name="batch-review", help="Batch review queue for Gerrit changes", invoke_without_command=True)

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # The automation server builds its uvicorn.Config from this dict.
    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = "%(asctime)s %(levelprefix)s %(message)s"
    log_config["formatters"]["default"]["datefmt"] = "%Y-%m-%d %H:%M:%S"
    log_config["formatters"]["access"]["fmt"] = '%(asctime)s %(levelprefix)s %(client_addr)s - "%(request_line)s" %(status_code)s'
    log_config["formatters"]["access"]["datefmt"] = "%Y-%m-%d %H:%M:%S"


async def _run(root: Path, port: int | None, serve: bool) -> None:
    from batch_review.backend.gerrit import GerritBackend
    from batch_review.config import load_config
    from batch_review.core import ReviewCore

    settings = load_config(root)
    if port is not None:
        settings.automation.port = port

    core = ReviewCore(GerritBackend(settings.backend), settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform; Ctrl+C still raises KeyboardInterrupt there.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    try:
        await core.refresh()
        if serve:
            bound = await core.start_server()
            typer.echo(f"Automation API on http://{settings.automation.host}:{bound}")
        typer.echo(f"{len(core.store.incoming)} change(s) in Incoming. Press Ctrl+C to stop.")
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await core.close()


@app.callback(invoke_without_command=True)
def start(
    root: Path = typer.Option(Path("."), "--root", help="Directory holding .batch-review/config.yaml"),
    port: int | None = typer.Option(None, help="Automation server port (overrides config)"),
    serve: bool = typer.Option(True, "--serve/--no-serve", help="Start the automation server"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Load Incoming from Gerrit and run the automation server until interrupted."""
    from batch_review.automation import ServerStartError

    _configure_logging(verbose)
    try:
        asyncio.run(_run(root, port, serve))
    except ServerStartError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ValueError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    app()
