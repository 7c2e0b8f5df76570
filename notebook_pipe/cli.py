"""
CLI interface for notebook-pipe.
"""

import logging
import sys
import threading
import time
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.status import Status
from rich.syntax import Syntax
from rich.table import Table

from notebook_pipe.channel import ChannelError
from notebook_pipe.config import Settings
from notebook_pipe.notebook import CellType
from notebook_pipe.protocol import KernelMessage, MessageKind, STATUS
from notebook_pipe.registry import STRUCTURED, SessionRegistry, detect_format, load_notebook
from notebook_pipe import fenced
from notebook_pipe.utils import format_rich_output, truncate_text


console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """notebook-pipe - run fenced notebook cells in an external interpreter."""
    _setup_logging(verbose)


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--language", "-l", default=None, help="Language named by code fences")
def cells(path: str, language: str):
    """List the cells of a notebook document."""
    settings = Settings()
    notebook = load_notebook(Path(path).read_bytes(), detect_format(path), language or settings.language)

    table = Table(title=Path(path).name, border_style="blue")
    table.add_column("#", style="bold cyan", justify="right")
    table.add_column("Type")
    table.add_column("Lines", justify="right", style="dim")
    table.add_column("First line", style="white")

    for i, record in enumerate(notebook.cells):
        first = record.source[0].rstrip("\n") if record.source else ""
        style = "green" if record.cell_type == CellType.CODE else "dim"
        table.add_row(
            str(i),
            f"[{style}]{record.cell_type.value}[/{style}]",
            str(len(record.source)),
            escape(truncate_text(first, 60)),
        )

    console.print(table)


@main.command()
@click.argument("src", type=click.Path(exists=True, dir_okay=False))
@click.argument("dst", type=click.Path(dir_okay=False))
@click.option("--language", "-l", default=None, help="Language named by code fences")
def convert(src: str, dst: str, language: str):
    """Convert between fenced text and the structured JSON form.

    The direction is chosen from the file suffixes (.json/.ipynb are structured).
    """
    language = language or Settings().language
    notebook = load_notebook(Path(src).read_bytes(), detect_format(src), language)

    if detect_format(dst) == STRUCTURED:
        notebook.metadata.setdefault("language_info", {"name": language})
        content = notebook.to_json()
    else:
        content = fenced.serialize(notebook.cells, language)

    Path(dst).write_text(content, encoding="utf-8")
    console.print(f"[green]Wrote {len(notebook.cells)} cells to {dst}[/green]")


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--timeout", "-t", default=60.0, show_default=True,
              help="Seconds to wait for all cells to report back")
@click.option("--save", "-s", "save_path", type=click.Path(dir_okay=False), default=None,
              help="Write the notebook after running (format from the suffix)")
def run(path: str, timeout: float, save_path: str):
    """Execute all code cells of a notebook in a fresh interpreter."""
    settings = Settings()
    registry = SessionRegistry(settings)
    uri = Path(path).resolve().as_uri()
    session = registry.open_document(uri, Path(path).read_bytes(), fmt=detect_format(path))

    finished: set[int] = set()
    done = threading.Condition()

    def on_message(message: KernelMessage):
        if message.kind == MessageKind.STATUS and message.tag == STATUS:
            head, _, status = message.payload.partition(";")
            if not status.startswith("ok"):
                console.print(f"[red]Request {head}: {escape(status)}[/red]")
            with done:
                if head.isdigit():
                    finished.add(int(head))
                done.notify_all()

    session.add_listener(on_message)
    document = session.document
    code_cells = [c for c in document.cells if c.cell_type == CellType.CODE and c.source.strip()]

    console.print(Panel(f"[bold]{Path(path).name}[/bold]  [dim]{len(code_cells)} code cells[/dim]",
                        title="[bold blue]notebook-pipe[/bold blue]", border_style="blue"))

    if not code_cells:
        console.print("[yellow]No code cells to execute[/yellow]")
        return

    sent: list[int] = []
    try:
        with Status("Executing...", console=console, spinner="dots"):
            for cell in code_cells:
                sent.append(session.execute(document, cell))

            deadline = time.monotonic() + timeout
            with done:
                while len(finished) < len(sent) and session.channel is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    done.wait(timeout=min(remaining, 0.5))

        for cell in code_cells:
            console.print(f"[dim]--- Cell {cell.handle} ---[/dim]")
            console.print(Syntax(cell.source, settings.language, theme="monokai", line_numbers=True))
            for output in cell.outputs:
                console.print(format_rich_output(output))
            console.print()

        if save_path:
            Path(save_path).write_text(registry.save(uri, detect_format(save_path)), encoding="utf-8")
            console.print(f"[dim]Saved {save_path}[/dim]")
    except ChannelError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)
    finally:
        registry.close_document(uri)

    if len(finished) == len(sent):
        console.print(f"[green]All {len(sent)} cells executed[/green]")
    else:
        console.print(f"[yellow]{len(finished)}/{len(sent)} cells reported back[/yellow]")


if __name__ == "__main__":
    main()
