"""Supervision of the engine process for titan dev.

The supervisor owns at most one ServerProcessHandle. It never decides when to
start or stop the engine, the coordinator does; it only spawns on request,
watches output and exit, retries fast crashes and reports what happened as
events.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from titanpl.cli.dev.logging import DevLogComponent, get_logger
from titanpl.cli.dev.output import (
    classify_exit,
    classify_server_line,
    extract_port,
    find_port_conflict,
    is_banner_line,
)
from titanpl.cli.dev.process_control import (
    Terminator,
    TrackedProcess,
    new_session_kwargs,
    select_terminator,
    track_process,
)
from titanpl.errors import (
    FastCrashError,
    PortConflictError,
    ServerSpawnError,
    SupervisorMisuseError,
)
from titanpl.models import (
    DevConfig,
    DevEvent,
    ExitKind,
    ServerCommand,
    ServerExited,
    ServerLineKind,
    ServerReady,
    ServerRetrying,
)
from titanpl.utils import strip_ansi

logger = get_logger(DevLogComponent.SUPERVISOR)
engine_logger = get_logger(DevLogComponent.ENGINE)
retry_logger = get_logger(DevLogComponent.RETRY)

RECENT_OUTPUT_LINES = 200
# How long to keep draining pipes after the engine exited (children may hold them open)
_DRAIN_TIMEOUT = 1.0


class ServerProcessHandle:
    """One spawned engine process and what we know about it."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        tracked: TrackedProcess,
        generation: int,
        retry_count: int = 0,
    ) -> None:
        self.process: asyncio.subprocess.Process = process
        self.tracked: TrackedProcess = tracked
        self.generation: int = generation
        self.retry_count: int = retry_count
        self.started_at: float = time.monotonic()
        self.kill_in_progress: bool = False
        self.ready: bool = False
        self.recent_output: deque[str] = deque(maxlen=RECENT_OUTPUT_LINES)
        self.pending_output: list[str] = []
        self.exited: asyncio.Event = asyncio.Event()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at


class ProcessSupervisor:
    """Start, observe, retry and kill the engine process."""

    def __init__(
        self,
        command_factory: Callable[[], ServerCommand | None],
        config: DevConfig,
        emit: Callable[[DevEvent], None],
        terminator: Terminator | None = None,
    ) -> None:
        self._command_factory = command_factory
        self.config = config
        self._emit = emit
        self._terminator: Terminator = terminator or select_terminator()
        self._handle: ServerProcessHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._booted = False
        self._generation = 0

    @property
    def handle(self) -> ServerProcessHandle | None:
        return self._handle

    @property
    def active(self) -> bool:
        """True while a process is alive or a retry is pending."""
        return self._handle is not None or (
            self._task is not None and not self._task.done()
        )

    # === Public operations ===

    async def start(self, generation: int) -> ServerProcessHandle | None:
        """Spawn the engine for a build generation.

        Must only be called after kill() has completed. Returns None when the
        engine could not be launched (a SPAWN_FAILED exit is emitted instead).
        """
        if self.active:
            raise SupervisorMisuseError(
                "start() called while an engine process is still owned by the supervisor"
            )

        self._generation = generation
        try:
            handle = await self._spawn(generation, retry_count=0)
        except ServerSpawnError as e:
            logger.error(str(e))
            self._emit(
                ServerExited(
                    generation=generation, kind=ExitKind.SPAWN_FAILED, detail=str(e)
                )
            )
            return None

        self._task = asyncio.create_task(self._supervise(handle))
        return handle

    async def kill(self) -> None:
        """Stop the current process and any pending retry.

        Resolves once the process exited, or after the kill timeout with a
        forced kill. A no-op when nothing is running.
        """
        handle = self._handle
        task = self._task

        if handle is not None:
            handle.kill_in_progress = True
            self._terminator.terminate(handle.tracked)
            try:
                await asyncio.wait_for(handle.exited.wait(), self.config.kill_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Engine pid={handle.pid} did not exit within "
                    f"{self.config.kill_timeout}s, forcing kill"
                )
                self._terminator.force_kill(handle.tracked)

        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._handle = None
        self._task = None

    # === Spawning ===

    async def _spawn(self, generation: int, retry_count: int) -> ServerProcessHandle:
        command = self._command_factory()
        if command is None:
            raise ServerSpawnError(
                "Titan engine binary not found. Install @titanpl/engine for this "
                "platform or set TITAN_ENGINE_BINARY."
            )

        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv,
                cwd=command.cwd,
                env=command.env or None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **new_session_kwargs(),  # type: ignore[arg-type]
            )
        except OSError as e:
            raise ServerSpawnError(f"Failed to start {command.argv[0]}: {e}") from e

        handle = ServerProcessHandle(
            process, track_process(process.pid), generation, retry_count
        )
        self._handle = handle
        logger.debug(
            f"Spawned engine pid={handle.pid} generation={generation} retry={retry_count}"
        )
        return handle

    # === Supervision ===

    def _before_retry(self, retry_state: RetryCallState) -> None:
        attempt = retry_state.attempt_number
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if retry_state.outcome and retry_state.outcome.failed:
            exception = retry_state.outcome.exception()
            retry_logger.warning(
                f"{exception}. Retrying ({attempt}/{self.config.max_retries}) in {delay:.1f}s..."
            )
        self._emit(ServerRetrying(generation=self._generation, attempt=attempt, delay=delay))

    async def _supervise(self, first: ServerProcessHandle) -> None:
        generation = first.generation
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_retries + 1),
                wait=wait_fixed(self.config.retry_delay),
                retry=retry_if_exception_type(FastCrashError),
                before_sleep=self._before_retry,
                reraise=True,
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    handle = (
                        first
                        if number == 1
                        else await self._spawn(generation, retry_count=number - 1)
                    )
                    await self._run_once(handle)
        except FastCrashError as e:
            logger.error(
                f"Engine kept crashing, giving up after {self.config.max_retries} retries. "
                "Waiting for file changes..."
            )
            self._emit(
                ServerExited(
                    generation=generation,
                    kind=ExitKind.RETRIES_EXHAUSTED,
                    returncode=e.returncode,
                    uptime=e.uptime,
                    detail=str(e),
                )
            )
        except PortConflictError as e:
            self._emit(
                ServerExited(
                    generation=generation,
                    kind=ExitKind.PORT_CONFLICT,
                    port=e.port,
                    signature=e.signature,
                    detail=str(e),
                )
            )
        except ServerSpawnError as e:
            logger.error(str(e))
            self._emit(
                ServerExited(
                    generation=generation, kind=ExitKind.SPAWN_FAILED, detail=str(e)
                )
            )

    async def _run_once(self, handle: ServerProcessHandle) -> None:
        """Observe one process until it exits and raise if it should be retried."""
        try:
            returncode = await self._observe(handle)
        finally:
            handle.exited.set()
            if self._handle is handle:
                self._handle = None

        if not handle.ready:
            self._flush_pending(handle, crashed=True)

        uptime = handle.uptime
        signature = find_port_conflict(
            handle.recent_output, self.config.port_conflict_signatures
        )
        kind = classify_exit(
            returncode,
            uptime=uptime,
            killed=handle.kill_in_progress,
            port_conflict=signature is not None,
            stability_threshold=self.config.stability_threshold,
        )
        logger.debug(
            f"Engine pid={handle.pid} exited with code {returncode} "
            f"after {uptime:.2f}s ({kind.value})"
        )

        if kind is ExitKind.KILLED:
            return
        if kind is ExitKind.FAST_CRASH:
            raise FastCrashError(returncode, uptime)
        if kind is ExitKind.PORT_CONFLICT:
            assert signature is not None
            raise PortConflictError(signature, extract_port(handle.recent_output))

        self._emit(
            ServerExited(
                generation=handle.generation,
                kind=ExitKind.STOPPED,
                returncode=returncode,
                uptime=uptime,
            )
        )

    async def _observe(self, handle: ServerProcessHandle) -> int | None:
        process = handle.process

        async def read_stream(stream: asyncio.StreamReader | None) -> None:
            if stream is None:
                return
            async for raw in stream:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line.strip():
                    self._on_line(handle, line)

        readers = asyncio.gather(read_stream(process.stdout), read_stream(process.stderr))
        try:
            returncode = await process.wait()
            try:
                await asyncio.wait_for(asyncio.shield(readers), _DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                pass
        finally:
            if not readers.done():
                readers.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await readers
        return returncode

    # === Output ===

    def _on_line(self, handle: ServerProcessHandle, line: str) -> None:
        handle.recent_output.append(strip_ansi(line))

        if handle.ready:
            engine_logger.info(line)
            return

        handle.pending_output.append(line)
        if classify_server_line(line, self.config.ready_markers) is ServerLineKind.READY:
            handle.ready = True
            self._flush_pending(handle)
            self._booted = True
            self._emit(ServerReady(generation=handle.generation, pid=handle.pid))

    def _flush_pending(self, handle: ServerProcessHandle, crashed: bool = False) -> None:
        lines = handle.pending_output
        handle.pending_output = []
        if self._booted and not crashed:
            lines = [line for line in lines if not is_banner_line(strip_ansi(line))]
        if not lines:
            return
        block = "\n".join(lines)
        if crashed and not handle.kill_in_progress:
            engine_logger.error(block)
        else:
            engine_logger.info(block)
