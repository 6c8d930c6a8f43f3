import asyncio
from pathlib import Path
from typing import Annotated

from typer import Argument, Exit, Option

from titanpl.bundle import BuildPipeline, render_diagnostics
from titanpl.cli.version import with_version
from titanpl.constants import DEFAULT_OUTPUT_DIR
from titanpl.utils import console, progress_spinner


@with_version
def build(
    app_path: Annotated[
        Path | None,
        Argument(
            help="The path to the app. If not provided, current working directory will be used",
        ),
    ] = None,
    output_dir: Annotated[
        Path,
        Option(
            "--output-dir",
            help="Directory where routes.json, action_map.json and action bundles are written, relative to the app path",
        ),
    ] = Path(DEFAULT_OUTPUT_DIR),
) -> None:
    """
    Build the project once:
    1. Compile app/app.ts (TypeScript apps)
    2. Generate routes.json and action_map.json
    3. Bundle app/actions into .jsbundle files
    """
    if app_path is None:
        app_path = Path.cwd()
    app_path = app_path.resolve()

    if not app_path.is_dir():
        console.print(f"[red]❌ App directory not found: {app_path}[/red]")
        raise Exit(code=1)

    console.print(f"🔧 Building project in {app_path}")

    pipeline = BuildPipeline(app_path, output_dir)
    with progress_spinner("📦 Bundling actions...", "✅ Build finished"):
        result = asyncio.run(pipeline.build())

        if not result.success:
            render_diagnostics(result.diagnostics)
            console.print("[red]❌ Build failed[/red]")
            raise Exit(code=1)

    bundles = [p for p in result.artifact_paths if p.suffix == ".jsbundle"]
    console.print(
        f"[green]✓[/green] {len(bundles)} action bundle(s) written to {pipeline.out_dir}"
    )
