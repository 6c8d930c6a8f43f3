import logging
import re
import shutil
import time
from contextlib import contextmanager
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from typing_extensions import override

# legacy_windows=False so the ⏣ and ✔ glyphs render on Windows terminals
console = Console(legacy_windows=False)

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1bc")


def format_elapsed_ms(start_time_perf: float) -> str:
    """Elapsed time as `420ms` or `3s 120ms`."""
    elapsed_seconds = time.perf_counter() - start_time_perf
    if elapsed_seconds < 1:
        return f"{int(elapsed_seconds * 1000)}ms"
    seconds = int(elapsed_seconds)
    remaining_ms = int((elapsed_seconds - seconds) * 1000)
    return f"{seconds}s {remaining_ms}ms"


@contextmanager
def progress_spinner(description: str, success_message: str):
    """Show a transient spinner while the block runs, then the success line with its timing."""
    phase_start = time.perf_counter()

    with Progress(
        SpinnerColumn(finished_text=""),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(description, total=None)
        yield phase_start

    console.print(f"{success_message} ({format_elapsed_ms(phase_start)})")


def print_with_prefix(prefix: str, text: str, color: str, width: int = 12):
    """Print each line of text behind a timestamp and a padded, colored prefix."""
    now = time.time()
    stamp = f"{time.strftime('%H:%M:%S', time.localtime(now))}.{int(now % 1 * 1000):03d}"
    label = escape(prefix).ljust(width)

    for line in text.split("\n"):
        console.print(
            f"[dim]{stamp}[/dim] | [{color}]{label}[/] | {escape(line)}",
            highlight=False,
        )


class PrefixedLogHandler(logging.Handler):
    """Routes a dev logger through print_with_prefix, recoloring warnings and errors."""

    def __init__(self, prefix: str, color: str, width: int = 12):
        super().__init__()
        self.prefix: str = prefix
        self.color: str = color
        self.width: int = width

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            color = self.color
            if record.levelno >= logging.ERROR:
                color = "red"
            elif record.levelno >= logging.WARNING:
                color = "yellow"

            print_with_prefix(self.prefix, msg, color, width=self.width)
        except Exception:
            self.handleError(record)


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from subprocess output."""
    return _ANSI_ESCAPE.sub("", text)


def find_project_tool(root: Path, name: str) -> str | None:
    """Locate an executable in the project's node_modules/.bin, then on PATH."""
    bin_dir = root / "node_modules" / ".bin"
    for candidate in (name, f"{name}.cmd", f"{name}.exe"):
        path = bin_dir / candidate
        if path.exists():
            return str(path)
    return shutil.which(name)


def ensure_dir(path: Path) -> None:
    """Create directory if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)

