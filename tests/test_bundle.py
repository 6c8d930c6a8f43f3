"""Tests for the build pipeline."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from rich.console import Console

from titanpl.bundle import (
    BuildPipeline,
    action_footer,
    parse_esbuild_errors,
    render_diagnostics,
)
from titanpl.models import BuildDiagnostic

ESBUILD_OUTPUT = """\
\x1b[31m✘ [ERROR]\x1b[0m Could not resolve "missing-lib"

    app/actions/hello.ts:1:20:
      1 │ import thing from "missing-lib";
        ╵                     ~~~~~~~~~~~~~

✘ [ERROR] Expected ";" but found "}"

    app/actions/bye.ts:4:2:
      4 │   }
        ╵   ^

2 errors
"""


@pytest.fixture
def project(tmp_path: Path) -> Path:
    actions = tmp_path / "app" / "actions"
    actions.mkdir(parents=True)
    (tmp_path / "app" / "app.js").write_text("t.get('/hello').action('hello');\n")
    (actions / "hello.js").write_text("export function hello() { return 'hi'; }\n")
    (actions / "types.d.ts").write_text("export {};\n")
    (actions / "native.rs").write_text("fn main() {}\n")
    return tmp_path


def _fake_tools(pipeline: BuildPipeline, fail_on: str | None = None) -> AsyncMock:
    """Replace tool execution with a fake that writes the expected outputs."""

    async def run(argv: list[str], env: dict[str, str] | None = None) -> tuple[int, str, str]:
        if "--input-type=module" in argv:
            assert env is not None
            out = Path(env["TITAN_OUT_DIR"])
            (out / "routes.json").write_text('{"routes": {}}')
            (out / "action_map.json").write_text("{}")
            return 0, "", ""

        source = argv[1]
        if fail_on is not None and source.endswith(fail_on):
            return 1, "", ESBUILD_OUTPUT
        outfile = next(a for a in argv if a.startswith("--outfile=")).split("=", 1)[1]
        Path(outfile).write_text(f"// bundle of {Path(source).name}")
        return 0, "", ""

    return AsyncMock(side_effect=run)


class TestParseEsbuildErrors:
    """Tests for esbuild diagnostics parsing."""

    def test_messages_and_locations(self) -> None:
        diagnostics = parse_esbuild_errors(ESBUILD_OUTPUT)
        assert diagnostics == [
            BuildDiagnostic(
                message='Could not resolve "missing-lib"',
                file="app/actions/hello.ts",
                line=1,
                column=20,
            ),
            BuildDiagnostic(
                message='Expected ";" but found "}"',
                file="app/actions/bye.ts",
                line=4,
                column=2,
            ),
        ]
        assert diagnostics[0].location == "app/actions/hello.ts:1:20"

    def test_no_errors(self) -> None:
        assert parse_esbuild_errors("") == []
        assert parse_esbuild_errors("▲ [WARNING] something minor") == []


class TestBuildPipeline:
    """Tests for build steps and output replacement."""

    @pytest.mark.asyncio
    async def test_successful_build_replaces_previous_output(self, project: Path) -> None:
        stale = project / "dist" / "actions" / "removed.jsbundle"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")

        pipeline = BuildPipeline(project)
        with (
            patch("titanpl.bundle.find_project_tool", return_value="/bin/esbuild"),
            patch("titanpl.bundle.shutil.which", return_value="/bin/node"),
            patch.object(pipeline, "_run", _fake_tools(pipeline)),
        ):
            result = await pipeline.build()

        assert result.success, result.diagnostics
        dist = project / "dist"
        assert (dist / "routes.json").exists()
        assert (dist / "action_map.json").exists()
        assert sorted(p.name for p in (dist / "actions").iterdir()) == ["hello.jsbundle"]
        assert not (dist / ".staging").exists()
        assert dist / "actions" / "hello.jsbundle" in result.artifact_paths

    @pytest.mark.asyncio
    async def test_failed_build_keeps_previous_output(self, project: Path) -> None:
        (project / "app" / "actions" / "broken.js").write_text("export function broken( {")
        previous = project / "dist" / "actions" / "hello.jsbundle"
        previous.parent.mkdir(parents=True)
        previous.write_text("previous build")

        pipeline = BuildPipeline(project)
        with (
            patch("titanpl.bundle.find_project_tool", return_value="/bin/esbuild"),
            patch("titanpl.bundle.shutil.which", return_value="/bin/node"),
            patch.object(pipeline, "_run", _fake_tools(pipeline, fail_on="broken.js")),
        ):
            result = await pipeline.build()

        assert not result.success
        assert result.diagnostics[0].file == "app/actions/hello.ts"
        assert previous.read_text() == "previous build"
        assert sorted(p.name for p in previous.parent.iterdir()) == ["hello.jsbundle"]
        assert not (project / "dist" / "routes.json").exists()
        assert not (project / "dist" / ".staging").exists()

    @pytest.mark.asyncio
    async def test_typescript_entry_is_compiled_first(self, project: Path) -> None:
        (project / "app" / "app.js").unlink()
        (project / "app" / "app.ts").write_text("t.start(3000);\n")

        pipeline = BuildPipeline(project)
        fake = _fake_tools(pipeline)
        with (
            patch("titanpl.bundle.find_project_tool", return_value="/bin/esbuild"),
            patch("titanpl.bundle.shutil.which", return_value="/bin/node"),
            patch.object(pipeline, "_run", fake),
        ):
            result = await pipeline.build()

        assert result.success
        first_call = fake.await_args_list[0].args[0]
        assert first_call[1] == str(project / "app" / "app.ts")
        assert f"--outfile={project / '.titan' / 'app.js'}" in first_call
        metadata_env = fake.await_args_list[1].kwargs["env"]
        assert metadata_env["TITAN_APP_ENTRY"] == str(project / ".titan" / "app.js")

    @pytest.mark.asyncio
    async def test_missing_esbuild(self, project: Path) -> None:
        pipeline = BuildPipeline(project)
        with (
            patch("titanpl.bundle.find_project_tool", return_value=None),
            patch("titanpl.bundle.shutil.which", return_value="/bin/node"),
            patch.object(pipeline, "_run", _fake_tools(pipeline)),
        ):
            result = await pipeline.build()

        assert not result.success
        assert result.diagnostics[0].title == "Missing Tool"
        assert "esbuild" in result.diagnostics[0].message

    @pytest.mark.asyncio
    async def test_missing_app_entry(self, tmp_path: Path) -> None:
        result = await BuildPipeline(tmp_path).build()
        assert not result.success
        assert "app/app.js" in result.diagnostics[0].message


class TestRendering:
    """Tests for diagnostics output."""

    def test_render_diagnostics(self) -> None:
        out = Console(record=True, width=100)
        render_diagnostics(
            [BuildDiagnostic(message="Unexpected token", file="app/app.js", line=3, column=1)],
            out,
        )
        text = out.export_text()
        assert "Build Error" in text
        assert "Unexpected token" in text
        assert "app/app.js:3:1" in text

    def test_action_footer_registers_action(self) -> None:
        footer = action_footer("hello")
        assert '__titan_exports["hello"]' in footer
        assert 'globalThis["hello"] = globalThis.defineAction(fn)' in footer
