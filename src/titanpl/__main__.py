from typing import Annotated

from typer import Exit, Option, Typer

from titanpl import __version__
from titanpl.cli.build import build
from titanpl.cli.dev.commands import dev
from titanpl.utils import console

app = Typer(
    name="titan",
    help="Titan Planet development tooling",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"titan {__version__}")
        raise Exit()


@app.callback()
def main_callback(
    version: Annotated[
        bool | None,
        Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show the version and exit",
        ),
    ] = None,
) -> None:
    """Titan Planet development tooling."""


app.command(name="dev", help="Build, run and hot-reload a Titan app")(dev)
app.command(name="build", help="Build routes, metadata and action bundles once")(build)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
