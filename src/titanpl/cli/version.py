"""Version banner shared by titan commands."""

from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

from titanpl import __version__
from titanpl.utils import console

F = TypeVar("F", bound=Callable[..., Any])


def version_line(mode: str | None = None) -> str:
    line = f"[bold cyan]⏣ Titan Planet[/bold cyan] [dim]v{__version__}[/dim]"
    if mode:
        line += f" [bold green]\\[ {mode} ][/bold green]"
    return line


def with_version(func: F) -> F:
    """Print the Titan Planet version before running a command."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        console.print(version_line())
        return func(*args, **kwargs)

    return wrapper  # type: ignore[return-value]
