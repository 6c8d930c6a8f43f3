"""Tests for engine and type-checker output classification."""

from __future__ import annotations

import pytest

from titanpl.cli.dev.output import (
    classify_exit,
    classify_server_line,
    classify_typecheck_line,
    extract_port,
    find_port_conflict,
    is_banner_line,
)
from titanpl.constants import PORT_CONFLICT_SIGNATURES, READY_MARKERS
from titanpl.models import ExitKind, ServerLineKind, TypeCheckLineKind


class TestServerLines:
    """Tests for engine stdout/stderr classification."""

    def test_ready_marker(self) -> None:
        assert (
            classify_server_line("\x1b[32mTitan server running on 3000\x1b[0m", READY_MARKERS)
            is ServerLineKind.READY
        )

    def test_banner_and_other(self) -> None:
        assert classify_server_line("   ╚═╝   ", READY_MARKERS) is ServerLineKind.BANNER
        assert classify_server_line("GET /hello 200", READY_MARKERS) is ServerLineKind.OTHER
        assert is_banner_line("████████╗██╗")
        assert not is_banner_line("[Titan] action loaded")

    def test_custom_ready_marker(self) -> None:
        assert classify_server_line("listening", ["listening"]) is ServerLineKind.READY


class TestPortConflict:
    """Tests for address-in-use detection."""

    @pytest.mark.parametrize(
        "line",
        [
            "Error: Address already in use (os error 98)",
            "thread 'main' panicked: AddrInUse",
            "bind failed: os error 10048",
            "Error: listen EADDRINUSE: address already in use :::3000",
        ],
    )
    def test_signatures(self, line: str) -> None:
        assert find_port_conflict(["booting", line], PORT_CONFLICT_SIGNATURES) is not None

    def test_no_conflict(self) -> None:
        assert find_port_conflict(["panicked at src/main.rs"], PORT_CONFLICT_SIGNATURES) is None

    def test_extract_port(self) -> None:
        assert extract_port(["failed to bind 0.0.0.0:3000"]) == 3000
        assert extract_port(["listen EADDRINUSE on port 8080"]) == 8080
        assert extract_port(["Address already in use (os error 98)"]) is None


class TestClassifyExit:
    """Tests for exit classification."""

    def _classify(self, returncode: int | None, **kwargs: object) -> ExitKind:
        params: dict[str, object] = {
            "uptime": 1.0,
            "killed": False,
            "port_conflict": False,
            "stability_threshold": 15.0,
        }
        params.update(kwargs)
        return classify_exit(returncode, **params)  # type: ignore[arg-type]

    def test_killed_wins(self) -> None:
        assert self._classify(1, killed=True, port_conflict=True) is ExitKind.KILLED

    def test_clean_and_signal_exits_are_stops(self) -> None:
        assert self._classify(0) is ExitKind.STOPPED
        assert self._classify(-15) is ExitKind.STOPPED
        assert self._classify(None) is ExitKind.STOPPED

    def test_port_conflict_before_fast_crash(self) -> None:
        assert self._classify(1, port_conflict=True) is ExitKind.PORT_CONFLICT

    def test_fast_and_slow_crash(self) -> None:
        assert self._classify(1, uptime=0.2) is ExitKind.FAST_CRASH
        assert self._classify(1, uptime=20.0) is ExitKind.STOPPED


class TestTypeCheckLines:
    """Tests for tsc --watch output classification."""

    @pytest.mark.parametrize(
        ("line", "kind", "count"),
        [
            ("12:00:00 - Starting compilation in watch mode...", TypeCheckLineKind.CHECK_STARTED, 0),
            ("12:00:01 - File change detected. Starting incremental compilation...", TypeCheckLineKind.CHECK_STARTED, 0),
            ("12:00:02 - Found 0 errors. Watching for file changes.", TypeCheckLineKind.CLEAN, 0),
            ("12:00:02 - Found 1 error. Watching for file changes.", TypeCheckLineKind.ERRORS, 1),
            ("12:00:02 - Found 12 errors. Watching for file changes.", TypeCheckLineKind.ERRORS, 12),
            ("app/app.ts(3,7): error TS2322: Type 'string' is not assignable", TypeCheckLineKind.ERROR_DETAIL, 0),
            ("", TypeCheckLineKind.OTHER, 0),
        ],
    )
    def test_classification(self, line: str, kind: TypeCheckLineKind, count: int) -> None:
        parsed = classify_typecheck_line(line)
        assert parsed.kind is kind
        assert parsed.error_count == count

    def test_ansi_is_stripped(self) -> None:
        parsed = classify_typecheck_line("\x1b[96mFound 0 errors\x1b[0m. Watching")
        assert parsed.kind is TypeCheckLineKind.CLEAN
        assert "\x1b" not in parsed.text
