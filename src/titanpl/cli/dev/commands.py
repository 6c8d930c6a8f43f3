"""The `titan dev` command."""

import asyncio
import os
import signal
from pathlib import Path
from typing import Annotated

from typer import Argument, Exit, Option

from titanpl.bundle import BuildPipeline
from titanpl.cli.dev.coordinator import DevLoopCoordinator
from titanpl.cli.dev.logging import configure_dev_logging
from titanpl.cli.dev.process_control import select_terminator
from titanpl.cli.dev.supervisor import ProcessSupervisor
from titanpl.cli.dev.typecheck import TypeHealthMonitor
from titanpl.cli.dev.watcher import ChangeWatcher
from titanpl.cli.version import version_line
from titanpl.engine import resolve_engine_binary, resolve_server_command
from titanpl.models import DevConfig, ProjectInfo, ShutdownRequested
from titanpl.project import create_session, detect_project
from titanpl.utils import console


def print_banner(info: ProjectInfo, typecheck: bool) -> None:
    console.print()
    console.print(version_line("Dev Mode"))
    console.print()
    console.print(f"  [bold]Type:[/bold]        {info.mode_label}")
    console.print("  [bold]Hot Reload:[/bold]  [green]Enabled[/green]")
    if info.uses_static_typing:
        state = "[green]Enabled[/green]" if typecheck else "[yellow]Disabled[/yellow]"
        console.print(f"  [bold]Type Check:[/bold]  {state}")
    if info.has_env_file:
        console.print("  [bold]Env:[/bold]         [yellow]Loaded[/yellow]")
    console.print()


async def run_dev_loop(info: ProjectInfo, config: DevConfig) -> None:
    """Wire up the dev loop for a project and run it until interrupted."""
    session = create_session(info, typecheck=config.typecheck)
    terminator = select_terminator()

    coordinator: DevLoopCoordinator
    supervisor = ProcessSupervisor(
        lambda: resolve_server_command(info, config.output_dir),
        config,
        lambda event: coordinator.post(event),
        terminator,
    )
    monitor = (
        TypeHealthMonitor(
            info.root,
            lambda event: coordinator.post(event),
            max_restarts=config.typecheck_max_restarts,
            terminator=terminator,
        )
        if session.uses_static_typing
        else None
    )
    coordinator = DevLoopCoordinator(
        session,
        config,
        supervisor,
        BuildPipeline(info.root, config.output_dir),
        monitor=monitor,
        watcher=ChangeWatcher(info.root, config),
    )

    loop = asyncio.get_running_loop()
    if os.name != "nt":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, coordinator.post, ShutdownRequested())

    await coordinator.run()


def dev(
    app_path: Annotated[
        Path | None,
        Argument(
            help="The path to the app. If not provided, current working directory will be used"
        ),
    ] = None,
    debounce_ms: Annotated[
        int | None,
        Option("--debounce-ms", help="Quiet period before a file change triggers a rebuild"),
    ] = None,
    max_retries: Annotated[
        int | None,
        Option("--max-retries", help="Maximum automatic restarts after a fast crash"),
    ] = None,
    retry_delay: Annotated[
        float | None,
        Option("--retry-delay", help="Seconds to wait before restarting a crashed engine"),
    ] = None,
    stability_threshold: Annotated[
        float | None,
        Option(
            "--stability-threshold",
            help="Seconds an engine must run before an exit is no longer a fast crash",
        ),
    ] = None,
    kill_timeout: Annotated[
        float | None,
        Option("--kill-timeout", help="Seconds to wait for the engine to exit before force-killing it"),
    ] = None,
    typecheck: Annotated[
        bool | None,
        Option(
            "--typecheck/--no-typecheck",
            help="Gate rebuilds on a clean `tsc --watch` run (TypeScript projects)",
        ),
    ] = None,
    verbose: Annotated[
        bool, Option("--verbose", "-v", help="Show debug logs")
    ] = False,
):
    """Build, run and hot-reload a Titan app."""
    if app_path is None:
        app_path = Path.cwd()

    if not app_path.is_dir():
        console.print(f"[red]❌ App directory not found: {app_path}[/red]")
        raise Exit(code=1)

    info = detect_project(app_path)
    if not info.has_cargo_server and resolve_engine_binary(info.root) is None:
        console.print(
            "[red]❌ Titan engine binary not found. Install @titanpl/engine for "
            "this platform or set TITAN_ENGINE_BINARY.[/red]"
        )
        raise Exit(code=1)

    # Build config from CLI options (use defaults from DevConfig if not specified)
    overrides = {
        "debounce_ms": debounce_ms,
        "max_retries": max_retries,
        "retry_delay": retry_delay,
        "stability_threshold": stability_threshold,
        "kill_timeout": kill_timeout,
        "typecheck": typecheck,
    }
    config = DevConfig(**{k: v for k, v in overrides.items() if v is not None})

    print_banner(info, typecheck is not False)
    configure_dev_logging(verbose=verbose)

    try:
        asyncio.run(run_dev_loop(info, config))
    except KeyboardInterrupt:
        # Windows has no loop signal handlers; the coordinator's finally already cleaned up.
        console.print("[dim]Stopped.[/dim]")
