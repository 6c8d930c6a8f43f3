"""Build pipeline: app metadata and action bundles for the engine.

A build runs in three steps, all through external tools:

1. TypeScript apps compile `app/app.ts` to `.titan/app.js` with esbuild.
2. The app entry is executed with node, which writes `routes.json` and
   `action_map.json`.
3. Every `app/actions/*.{ts,js}` is bundled with esbuild to
   `<name>.jsbundle`.

Everything is written to a staging directory first and only moved into the
output directory once all steps succeeded.
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
import time
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from titanpl import __version__
from titanpl.constants import (
    ACTIONS_DIR,
    COMPILED_APP_DIR,
    DEFAULT_OUTPUT_DIR,
    OUT_DIR_ENV,
)
from titanpl.errors import BuildError
from titanpl.models import BuildDiagnostic, BuildResult
from titanpl.utils import console, ensure_dir, find_project_tool, strip_ansi

APP_ENTRY_ENV = "TITAN_APP_ENTRY"
METADATA_FILES = ("routes.json", "action_map.json")
BUNDLE_SUFFIX = ".jsbundle"
_STAGING_DIR = ".staging"

_ESBUILD_ERROR = re.compile(r"^\s*(?:✘|X|×)\s*\[ERROR\]\s*(?P<message>.+?)\s*$")
_ESBUILD_LOCATION = re.compile(r"^\s+(?P<file>\S.*?):(?P<line>\d+):(?P<column>\d+):\s*$")
_NODE_LOCATION = re.compile(r"^(?:file://)?(?P<file>/?\S+?\.(?:[cm]?js|ts)):(?P<line>\d+)$")

# Executed with `node --input-type=module`; mirrors what the app's route
# registrations leave on globalThis.
_METADATA_SCRIPT = """
import fs from "node:fs";
import path from "node:path";
import { pathToFileURL } from "node:url";

const entry = process.env.TITAN_APP_ENTRY;
const out = process.env.TITAN_OUT_DIR;

await import(pathToFileURL(entry).href + `?t=${Date.now()}`);

const config = globalThis.__TITAN_CONFIG__ || { port: 3000, threads: 4, stack_mb: 8 };
const routes = globalThis.__TITAN_ROUTES_MAP__ || {};
const dynamicRoutes = globalThis.__TITAN_DYNAMIC_ROUTES__ || {};
const actionMap = globalThis.__TITAN_ACTION_MAP__ || {};

fs.mkdirSync(out, { recursive: true });
fs.writeFileSync(
  path.join(out, "routes.json"),
  JSON.stringify(
    { __config: config, routes, __dynamic_routes: Object.values(dynamicRoutes).flat() },
    null,
    2
  )
);
fs.writeFileSync(path.join(out, "action_map.json"), JSON.stringify(actionMap, null, 2));
"""


def action_footer(action_name: str) -> str:
    """JS appended to an action bundle so the engine can find the action."""
    return (
        "(function () {\n"
        f'  const fn = __titan_exports["{action_name}"] || __titan_exports.default;\n'
        f'  if (typeof fn !== "function") throw new Error("[TitanPL] Action \'{action_name}\' '
        'not found or not a function");\n'
        f'  globalThis["{action_name}"] = globalThis.defineAction(fn);\n'
        "})();"
    )


def parse_esbuild_errors(output: str) -> list[BuildDiagnostic]:
    """Turn esbuild's CLI error output into diagnostics.

    esbuild prints `✘ [ERROR] <message>` followed, after a blank line, by an
    indented `file:line:column:` location.
    """
    diagnostics: list[BuildDiagnostic] = []
    current: BuildDiagnostic | None = None

    for raw in strip_ansi(output).splitlines():
        error = _ESBUILD_ERROR.match(raw)
        if error:
            if current is not None:
                diagnostics.append(current)
            current = BuildDiagnostic(message=error.group("message"))
            continue

        location = _ESBUILD_LOCATION.match(raw)
        if location and current is not None and current.file is None:
            current = current.model_copy(
                update={
                    "file": location.group("file"),
                    "line": int(location.group("line")),
                    "column": int(location.group("column")),
                }
            )

    if current is not None:
        diagnostics.append(current)
    return diagnostics


def _tail(text: str, lines: int = 20) -> str:
    kept = [line for line in strip_ansi(text).splitlines() if line.strip()]
    return "\n".join(kept[-lines:])


def _node_diagnostic(stderr: str) -> BuildDiagnostic:
    """Best-effort diagnostic for an exception thrown while loading the app."""
    text = strip_ansi(stderr)
    file = line = None
    for raw in text.splitlines():
        match = _NODE_LOCATION.match(raw.strip())
        if match:
            file, line = match.group("file"), int(match.group("line"))
            break

    message = next(
        (
            raw.strip()
            for raw in text.splitlines()
            if re.match(r"^\s*\w*Error\b", raw)
        ),
        _tail(text) or "Failed to load application routes",
    )
    return BuildDiagnostic(title="Metadata Error", message=message, file=file, line=line)


def render_diagnostics(
    diagnostics: list[BuildDiagnostic], out: Console | None = None
) -> None:
    """Print each diagnostic as an error box."""
    out = out or console
    for diagnostic in diagnostics:
        body = Text(diagnostic.message)
        if diagnostic.location:
            body.append(f"\n\nat {diagnostic.location}", style="dim")
        out.print()
        out.print(
            Panel(
                body,
                title=f"[bold red]{diagnostic.title}[/bold red]",
                subtitle=f"Titan Planet v{__version__}",
                border_style="red",
                expand=False,
            )
        )


class BuildPipeline:
    """Produce the engine's build output for a project directory."""

    def __init__(self, root: Path, output_dir: Path = Path(DEFAULT_OUTPUT_DIR)):
        self.root = root
        self.out_dir = output_dir if output_dir.is_absolute() else root / output_dir

    async def build(self) -> BuildResult:
        """Run the whole pipeline. Failures are returned, never raised."""
        start = time.perf_counter()
        try:
            artifacts = await self._build()
        except BuildError as e:
            return BuildResult.failed(e.diagnostics, _elapsed_ms(start))
        return BuildResult.ok(artifacts, _elapsed_ms(start))

    # === Steps ===

    async def _build(self) -> list[Path]:
        staging = self.out_dir / _STAGING_DIR
        if staging.exists():
            shutil.rmtree(staging)
        ensure_dir(staging / "actions")

        try:
            entry = await self._compile_app()
            await self._write_metadata(entry, staging)
            await self._bundle_actions(staging / "actions")
            return self._commit(staging)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def _esbuild(self) -> str:
        esbuild = find_project_tool(self.root, "esbuild")
        if esbuild is None:
            raise BuildError(
                "esbuild not found",
                [
                    BuildDiagnostic(
                        title="Missing Tool",
                        message="esbuild was not found in node_modules/.bin or on PATH. "
                        "Run `npm install` in the project.",
                    )
                ],
            )
        return esbuild

    def _node(self) -> str:
        node = shutil.which("node")
        if node is None:
            raise BuildError(
                "node not found",
                [
                    BuildDiagnostic(
                        title="Missing Tool",
                        message="Node.js was not found on PATH.",
                    )
                ],
            )
        return node

    def _app_entry(self) -> Path:
        app_dir = self.root / "app"
        for name in ("app.ts", "app.js"):
            if (app_dir / name).exists():
                return app_dir / name
        raise BuildError(
            "app entry not found",
            [BuildDiagnostic(title="Build Error", message="app/app.js or app/app.ts not found.")],
        )

    async def _compile_app(self) -> Path:
        entry = self._app_entry()
        if entry.suffix != ".ts":
            return entry

        compiled = self.root / COMPILED_APP_DIR / "app.js"
        ensure_dir(compiled.parent)
        returncode, stdout, stderr = await self._run(
            [
                self._esbuild(),
                str(entry),
                "--bundle",
                f"--outfile={compiled}",
                "--platform=node",
                "--format=esm",
                "--packages=external",
                "--log-level=error",
            ]
        )
        if returncode != 0:
            raise BuildError(
                "Failed to compile app entry",
                parse_esbuild_errors(stderr + stdout)
                or [BuildDiagnostic(message=_tail(stderr + stdout) or "esbuild failed")],
            )
        return compiled

    async def _write_metadata(self, entry: Path, target: Path) -> None:
        env = {**os.environ, APP_ENTRY_ENV: str(entry), OUT_DIR_ENV: str(target)}
        returncode, _, stderr = await self._run(
            [self._node(), "--input-type=module", "-e", _METADATA_SCRIPT], env=env
        )
        if returncode != 0:
            raise BuildError("Failed to parse routes", [_node_diagnostic(stderr)])

    async def _bundle_actions(self, target: Path) -> list[Path]:
        actions_dir = self.root / ACTIONS_DIR
        if not actions_dir.is_dir():
            return []

        sources = sorted(
            p
            for p in actions_dir.iterdir()
            if p.suffix in (".ts", ".js") and not p.name.endswith(".d.ts")
        )
        if not sources:
            return []

        esbuild = self._esbuild()
        bundles: list[Path] = []
        for source in sources:
            outfile = target / f"{source.stem}{BUNDLE_SUFFIX}"
            returncode, stdout, stderr = await self._run(
                [
                    esbuild,
                    str(source),
                    "--bundle",
                    f"--outfile={outfile}",
                    "--format=iife",
                    "--global-name=__titan_exports",
                    "--platform=node",
                    "--target=es2020",
                    "--log-level=error",
                    "--banner:js=var Titan = t;",
                    f"--footer:js={action_footer(source.stem)}",
                ]
            )
            if returncode != 0:
                raise BuildError(
                    f"Failed to bundle action {source.name}",
                    parse_esbuild_errors(stderr + stdout)
                    or [
                        BuildDiagnostic(
                            message=_tail(stderr + stdout) or "esbuild failed",
                            file=str(source.relative_to(self.root)),
                        )
                    ],
                )
            bundles.append(outfile)
        return bundles

    def _commit(self, staging: Path) -> list[Path]:
        """Move staged output into place, replacing the previous build."""
        artifacts: list[Path] = []
        for name in METADATA_FILES:
            staged = staging / name
            if staged.exists():
                os.replace(staged, self.out_dir / name)
                artifacts.append(self.out_dir / name)

        actions = self.out_dir / "actions"
        previous = self.out_dir / ".actions-previous"
        if previous.exists():
            shutil.rmtree(previous)
        if actions.exists():
            os.replace(actions, previous)
        os.replace(staging / "actions", actions)
        if previous.exists():
            shutil.rmtree(previous, ignore_errors=True)

        artifacts.extend(sorted(actions.glob(f"*{BUNDLE_SUFFIX}")))
        return artifacts

    async def _run(
        self, argv: list[str], env: dict[str, str] | None = None
    ) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.root,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BuildError(f"Failed to run {argv[0]}: {e}") from e
        stdout, stderr = await process.communicate()
        return (
            process.returncode if process.returncode is not None else 1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
