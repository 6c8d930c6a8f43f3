"""Type health monitoring for TypeScript projects.

Runs `tsc --watch` for the whole session and turns its output into a
tri-state TypeHealth. A new check closes the gate immediately; only a clean
"Found 0 errors" opens it again.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
from collections.abc import Callable
from pathlib import Path

from rich.markup import escape
from tenacity import (
    RetryCallState,
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from titanpl.cli.dev.logging import DevLogComponent, get_logger
from titanpl.cli.dev.output import classify_typecheck_line
from titanpl.cli.dev.process_control import (
    Terminator,
    TrackedProcess,
    new_session_kwargs,
    select_terminator,
    track_process,
)
from titanpl.constants import DEFAULT_TYPECHECK_MAX_RESTARTS
from titanpl.errors import TypeCheckerUnavailable
from titanpl.models import (
    DevEvent,
    HealthChanged,
    TypeCheckerMissing,
    TypeCheckLine,
    TypeCheckLineKind,
    TypeHealth,
)
from titanpl.utils import console, find_project_tool

logger = get_logger(DevLogComponent.TYPECHECK)
retry_logger = get_logger(DevLogComponent.RETRY)

TSC_ARGS = ["--noEmit", "--watch", "--preserveWatchOutput", "--pretty", "false"]


def resolve_tsc(root: Path) -> list[str]:
    """Command prefix that runs the project's TypeScript compiler."""
    tsc_js = root / "node_modules" / "typescript" / "bin" / "tsc"
    node = shutil.which("node")
    if tsc_js.exists() and node:
        return [node, str(tsc_js)]

    tool = find_project_tool(root, "tsc")
    if tool:
        return [tool]

    raise TypeCheckerUnavailable(
        "TypeScript compiler not found. Install it with `npm install -D typescript`."
    )


class TypeCheckerExited(Exception):
    """tsc --watch exited while the monitor was still running."""


def _log_restart(retry_state: RetryCallState) -> None:
    if retry_state.outcome and retry_state.outcome.failed:
        retry_logger.warning(
            f"Type checker stopped ({retry_state.outcome.exception()}). "
            f"Restarting (attempt {retry_state.attempt_number})..."
        )


class TypeHealthMonitor:
    """Owns the tsc watch process and the session's TypeHealth."""

    def __init__(
        self,
        root: Path,
        emit: Callable[[DevEvent], None],
        max_restarts: int = DEFAULT_TYPECHECK_MAX_RESTARTS,
        terminator: Terminator | None = None,
    ):
        self.root = root
        self._emit = emit
        self.max_restarts = max_restarts
        self._terminator: Terminator = terminator or select_terminator()
        self.health: TypeHealth = TypeHealth.UNKNOWN
        self.check_id = 0
        self.error_count = 0
        self.available = True
        self._process: asyncio.subprocess.Process | None = None
        self._tracked: TrackedProcess | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = False

    # === Health transitions ===

    def _set_health(
        self, health: TypeHealth, error_count: int = 0, *, force: bool = False
    ) -> None:
        changed = force or health is not self.health or error_count != self.error_count
        self.health = health
        self.error_count = error_count
        if changed:
            self._emit(
                HealthChanged(
                    health=health, check_id=self.check_id, error_count=error_count
                )
            )

    def feed_line(self, line: str) -> TypeCheckLine:
        """Apply one line of checker output to the current health."""
        parsed = classify_typecheck_line(line)

        if parsed.kind is TypeCheckLineKind.CHECK_STARTED:
            self.check_id += 1
            self._set_health(TypeHealth.UNHEALTHY)
            logger.info(parsed.text)
        elif parsed.kind is TypeCheckLineKind.CLEAN:
            logger.info("Type check passed")
            # A clean result is also a rebuild trigger, so it is always emitted.
            self._set_health(TypeHealth.HEALTHY, force=True)
        elif parsed.kind is TypeCheckLineKind.ERRORS:
            logger.error(f"Found {parsed.error_count} type error(s), waiting for fixes...")
            self._set_health(TypeHealth.UNHEALTHY, parsed.error_count)
        elif parsed.kind is TypeCheckLineKind.ERROR_DETAIL:
            console.print(f"[red]{escape(parsed.text)}[/red]", highlight=False)
            self._set_health(TypeHealth.UNHEALTHY, self.error_count)
        elif parsed.text.strip():
            logger.info(parsed.text)

        return parsed

    # === Process lifecycle ===

    def start(self) -> None:
        """Run the checker in the background until stop()."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def run(self) -> None:
        @retry(
            stop=stop_after_attempt(self.max_restarts + 1),
            wait=wait_exponential(multiplier=1, min=1, max=30),
            before_sleep=_log_restart,
            retry=retry_if_not_exception_type(TypeCheckerUnavailable),
            reraise=True,
        )
        async def run_with_restart() -> None:
            await self._run_once()

        try:
            await run_with_restart()
        except TypeCheckerUnavailable as e:
            self._report_missing(str(e))
        except TypeCheckerExited as e:
            logger.error(f"Type checker gave up after {self.max_restarts} restarts: {e}")
            self._report_missing(str(e))

    def _report_missing(self, reason: str) -> None:
        if not self.available:
            return
        self.available = False
        self.health = TypeHealth.UNKNOWN
        self._emit(TypeCheckerMissing(reason=reason))

    async def _run_once(self) -> None:
        command = [*resolve_tsc(self.root), *TSC_ARGS]
        # Every (re)start is pessimistic until tsc reports a clean pass.
        self._set_health(TypeHealth.UNKNOWN)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **new_session_kwargs(),  # type: ignore[arg-type]
            )
        except OSError as e:
            raise TypeCheckerUnavailable(f"Failed to start type checker: {e}") from e

        self._process = process
        self._tracked = track_process(process.pid)
        logger.debug(f"Started type checker pid={process.pid}")

        try:
            assert process.stdout is not None
            async for raw in process.stdout:
                self.feed_line(raw.decode("utf-8", errors="replace"))
            returncode = await process.wait()
        finally:
            self._process = None

        if not self._stopping:
            raise TypeCheckerExited(f"tsc exited with code {returncode}")

    async def stop(self) -> None:
        """Terminate the checker process and its restart loop."""
        self._stopping = True
        process, tracked = self._process, self._tracked
        if process is not None and tracked is not None and process.returncode is None:
            self._terminator.terminate(tracked)
            try:
                await asyncio.wait_for(process.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                self._terminator.force_kill(tracked)

        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
