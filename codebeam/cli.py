import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional

import typer
import uvicorn

from .config import SERVER_URL
from .connection import ConnectionManager
from .signaling import SignalingClient
from .transfer import FileMetadata


app = typer.Typer(help="Send a file directly to another peer using a 6-digit code")

# receiver keeps the channel open briefly so its ACK reaches the sender
ACK_LINGER = 1.0


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def safe_name(name: str) -> str:
    """Strip any directory part a peer may put in the file name."""
    base = Path(name.replace("\\", "/")).name
    if base in ("", ".", ".."):
        return "received.bin"
    return base


class StatusPrinter:
    """Echo status changes and resolve once the attempt ends."""

    def __init__(self) -> None:
        self.done = asyncio.get_running_loop().create_future()
        self._last: Optional[str] = None
        self._last_progress: Optional[int] = None

    def __call__(self, status: str, progress: Optional[int] = None, error: Optional[Exception] = None) -> None:
        if status == "transferring":
            if progress is not None and progress != self._last_progress:
                self._last_progress = progress
                typer.echo(f"Transferring... {progress}%")
        elif status != self._last:
            typer.echo(f"Status: {status}" + (f" ({error})" if error else ""))
        self._last = status
        if status in ("completed", "error") and not self.done.done():
            self.done.set_result(status)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Run the rendezvous server."""
    setup_logging(verbose)
    uvicorn.run("rendezvous:app", host=host, port=port, log_level="debug" if verbose else "info")


@app.command()
def send(
    file_path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    server: str = typer.Option(SERVER_URL, help="Rendezvous server URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Offer FILE_PATH and wait for a receiver to fetch it."""
    setup_logging(verbose)

    async def _run() -> str:
        printer = StatusPrinter()
        async with SignalingClient(server) as signaling:
            manager = ConnectionManager(signaling, on_status=printer)
            try:
                code = await manager.start_sender(file_path)
                if code:
                    typer.echo(f"Share this code with the receiver: {code}")
                return await printer.done
            finally:
                await manager.stop()

    if asyncio.run(_run()) != "completed":
        raise typer.Exit(1)
    typer.echo("Transfer completed.")


@app.command()
def receive(
    code: str = typer.Argument(..., help="6-digit code shown by the sender"),
    out: Path = typer.Option(Path("."), help="Directory to store the file in"),
    server: str = typer.Option(SERVER_URL, help="Rendezvous server URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Fetch the file published under CODE."""
    if len(code) != 6 or not code.isdigit():
        typer.echo("The code must be exactly 6 digits.")
        raise typer.Exit(2)
    setup_logging(verbose)
    out.mkdir(parents=True, exist_ok=True)
    received: Dict[str, object] = {}

    def on_file(data: bytes, metadata: FileMetadata) -> None:
        received["data"] = data
        received["metadata"] = metadata

    async def _run() -> str:
        printer = StatusPrinter()
        async with SignalingClient(server) as signaling:
            manager = ConnectionManager(signaling, on_status=printer, on_file=on_file)
            try:
                await manager.start_receiver(code)
                status = await printer.done
                if status == "completed":
                    await asyncio.sleep(ACK_LINGER)
                return status
            finally:
                await manager.stop()

    if asyncio.run(_run()) != "completed":
        raise typer.Exit(1)

    metadata = received["metadata"]
    target = out / safe_name(metadata.name)
    target.write_bytes(received["data"])
    typer.echo(f"Saved {metadata.size} bytes to {target}")


if __name__ == "__main__":
    app()
