"""Tests for the type health monitor."""

from __future__ import annotations

import asyncio
import os
import stat
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from titanpl.cli.dev.logging import configure_dev_logging
from titanpl.cli.dev.typecheck import (
    TSC_ARGS,
    TypeCheckerExited,
    TypeHealthMonitor,
    resolve_tsc,
)
from titanpl.errors import TypeCheckerUnavailable
from titanpl.models import DevEvent, HealthChanged, TypeCheckerMissing, TypeHealth
from titanpl.utils import console


@pytest.fixture
def events() -> list[DevEvent]:
    return []


@pytest.fixture
def monitor(tmp_path: Path, events: list[DevEvent]) -> TypeHealthMonitor:
    return TypeHealthMonitor(tmp_path, events.append)


def _health_events(events: list[DevEvent]) -> list[tuple[TypeHealth, int, int]]:
    return [
        (e.health, e.check_id, e.error_count)
        for e in events
        if isinstance(e, HealthChanged)
    ]


class TestHealthTransitions:
    """Tests for how checker output moves TypeHealth."""

    def test_starts_unknown(self, monitor: TypeHealthMonitor) -> None:
        assert monitor.health is TypeHealth.UNKNOWN
        assert monitor.check_id == 0

    def test_check_start_is_pessimistic(
        self, monitor: TypeHealthMonitor, events: list[DevEvent]
    ) -> None:
        monitor.feed_line("10:00:00 - Starting compilation in watch mode...")
        assert monitor.health is TypeHealth.UNHEALTHY
        assert monitor.check_id == 1
        assert _health_events(events) == [(TypeHealth.UNHEALTHY, 1, 0)]

    def test_full_cycle(self, monitor: TypeHealthMonitor, events: list[DevEvent]) -> None:
        monitor.feed_line("10:00:00 - Starting compilation in watch mode...")
        monitor.feed_line("app/app.ts(1,7): error TS2322: Type 'number' is not assignable")
        monitor.feed_line("10:00:01 - Found 2 errors. Watching for file changes.")
        monitor.feed_line("10:00:05 - File change detected. Starting incremental compilation...")
        monitor.feed_line("10:00:06 - Found 0 errors. Watching for file changes.")

        assert monitor.health is TypeHealth.HEALTHY
        assert monitor.check_id == 2
        assert _health_events(events) == [
            (TypeHealth.UNHEALTHY, 1, 0),
            (TypeHealth.UNHEALTHY, 1, 2),
            (TypeHealth.UNHEALTHY, 2, 0),
            (TypeHealth.HEALTHY, 2, 0),
        ]

    def test_every_clean_result_is_reported(
        self, monitor: TypeHealthMonitor, events: list[DevEvent]
    ) -> None:
        monitor.feed_line("Found 0 errors. Watching for file changes.")
        monitor.feed_line("Found 0 errors. Watching for file changes.")
        assert [h for h, _, _ in _health_events(events)] == [
            TypeHealth.HEALTHY,
            TypeHealth.HEALTHY,
        ]

    def test_other_lines_are_inert(
        self, monitor: TypeHealthMonitor, events: list[DevEvent]
    ) -> None:
        monitor.feed_line("")
        monitor.feed_line("Watching for file changes.")
        assert events == []
        assert monitor.health is TypeHealth.UNKNOWN

    def test_progress_lines_are_displayed(self, monitor: TypeHealthMonitor) -> None:
        configure_dev_logging(verbose=False)
        with console.capture() as capture:
            monitor.feed_line("Starting compilation in watch mode...")
            monitor.feed_line("message TS6194: Watching for file changes.")

        output = capture.get()
        assert "[typecheck]" in output
        assert "Starting compilation" in output
        assert "TS6194" in output


class TestResolveTsc:
    """Tests for locating the TypeScript compiler."""

    def test_project_bin(self, tmp_path: Path) -> None:
        bin_dir = tmp_path / "node_modules" / ".bin"
        bin_dir.mkdir(parents=True)
        (bin_dir / "tsc").write_text("")
        with patch("shutil.which", return_value=None):
            assert resolve_tsc(tmp_path) == [str(bin_dir / "tsc")]

    def test_typescript_package_runs_with_node(self, tmp_path: Path) -> None:
        tsc_js = tmp_path / "node_modules" / "typescript" / "bin" / "tsc"
        tsc_js.parent.mkdir(parents=True)
        tsc_js.write_text("")
        with patch("shutil.which", return_value="/usr/bin/node"):
            assert resolve_tsc(tmp_path) == ["/usr/bin/node", str(tsc_js)]

    def test_missing(self, tmp_path: Path) -> None:
        with patch("shutil.which", return_value=None):
            with pytest.raises(TypeCheckerUnavailable):
                resolve_tsc(tmp_path)


class TestUnavailableChecker:
    """Tests for degrading when tsc cannot run."""

    @pytest.mark.asyncio
    async def test_missing_checker_is_reported_once(
        self, monitor: TypeHealthMonitor, events: list[DevEvent]
    ) -> None:
        with patch(
            "titanpl.cli.dev.typecheck.resolve_tsc",
            side_effect=TypeCheckerUnavailable("TypeScript compiler not found."),
        ):
            await monitor.run()
            await monitor.run()

        missing = [e for e in events if isinstance(e, TypeCheckerMissing)]
        assert len(missing) == 1
        assert "not found" in missing[0].reason
        assert monitor.health is TypeHealth.UNKNOWN
        assert not monitor.available

    @pytest.mark.asyncio
    async def test_gives_up_after_restarts(
        self, tmp_path: Path, events: list[DevEvent]
    ) -> None:
        monitor = TypeHealthMonitor(tmp_path, events.append, max_restarts=1)
        with patch.object(
            monitor,
            "_run_once",
            AsyncMock(side_effect=TypeCheckerExited("tsc exited with code 1")),
        ) as run_once:
            await monitor.run()

        assert run_once.await_count == 2
        assert any(isinstance(e, TypeCheckerMissing) for e in events)


@pytest.mark.skipif(os.name == "nt", reason="uses a shebang script as a fake tsc")
class TestWatchProcess:
    """Tests against a fake `tsc --watch` process."""

    @pytest.mark.asyncio
    async def test_streams_health_and_stops(
        self, tmp_path: Path, events: list[DevEvent]
    ) -> None:
        bin_dir = tmp_path / "node_modules" / ".bin"
        bin_dir.mkdir(parents=True)
        fake_tsc = bin_dir / "tsc"
        fake_tsc.write_text(
            f"#!{sys.executable}\n"
            "import sys, time\n"
            f"assert sys.argv[1:] == {TSC_ARGS!r}\n"
            "print('10:00:00 - Starting compilation in watch mode...', flush=True)\n"
            "print('10:00:01 - Found 0 errors. Watching for file changes.', flush=True)\n"
            "time.sleep(30)\n"
        )
        fake_tsc.chmod(fake_tsc.stat().st_mode | stat.S_IEXEC)

        monitor = TypeHealthMonitor(tmp_path, events.append)
        with patch("shutil.which", return_value=None):
            monitor.start()
            deadline = time.monotonic() + 10
            while monitor.health is not TypeHealth.HEALTHY:
                assert time.monotonic() < deadline, events
                await asyncio.sleep(0.02)

        assert monitor.check_id == 1
        await monitor.stop()
        assert not any(isinstance(e, TypeCheckerMissing) for e in events)
