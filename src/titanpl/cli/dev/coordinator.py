"""The dev-loop state machine.

Every source (watcher, type checker, build task, supervisor) posts events
into one queue. `run()` handles them one at a time, so the session state,
the build generation and the supervisor are only ever touched from that
single loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Protocol

from rich.status import Status

from titanpl.bundle import render_diagnostics
from titanpl.cli.dev.logging import DevLogComponent, get_logger
from titanpl.cli.dev.watcher import ChangeWatcher
from titanpl.constants import ENV_FILE
from titanpl.models import (
    BuildDiagnostic,
    BuildFinished,
    BuildResult,
    ChangeSettled,
    DevConfig,
    DevEvent,
    DevSession,
    DevState,
    ExitKind,
    HealthChanged,
    ServerExited,
    ServerReady,
    ServerRetrying,
    ShutdownRequested,
    TypeCheckerMissing,
    TypeHealth,
)
from titanpl.utils import console, format_elapsed_ms

logger = get_logger(DevLogComponent.DEV)

STABILIZING_MESSAGE = "[cyan]Stabilizing your app on its orbit...[/cyan]"
STILL_STABILIZING_MESSAGE = (
    "[yellow]Still stabilizing... (the first native build can take a while)[/yellow]"
)

# States in which engine events for the current generation are meaningful
_ENGINE_STATES = (DevState.STARTING, DevState.RUNNING)


class Supervisor(Protocol):
    @property
    def active(self) -> bool: ...

    async def start(self, generation: int) -> object: ...

    async def kill(self) -> None: ...


class Pipeline(Protocol):
    async def build(self) -> BuildResult: ...


class HealthMonitor(Protocol):
    check_id: int

    def start(self) -> None: ...

    async def stop(self) -> None: ...


class DevLoopCoordinator:
    """Decides when to build, start and kill, based on incoming events."""

    def __init__(
        self,
        session: DevSession,
        config: DevConfig,
        supervisor: Supervisor,
        pipeline: Pipeline,
        monitor: HealthMonitor | None = None,
        watcher: ChangeWatcher | None = None,
        show_status: bool = True,
    ):
        self.session = session
        self.config = config
        self.supervisor = supervisor
        self.pipeline = pipeline
        self.monitor = monitor
        self.watcher = watcher
        self.show_status = show_status

        self.queue: asyncio.Queue[DevEvent] = asyncio.Queue()
        self.health: TypeHealth = TypeHealth.UNKNOWN
        self._build_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._pending_rebuild = False
        self._missing_warned = False
        self._stopped = False
        self._cycle_started = time.perf_counter()
        self._status: Status | None = None
        self._slow_timer: asyncio.TimerHandle | None = None

    @property
    def state(self) -> DevState:
        return self.session.state

    @property
    def gated(self) -> bool:
        """Whether builds wait for a clean type check."""
        return self.session.uses_static_typing

    def post(self, event: DevEvent) -> None:
        """Enqueue an event for the control loop (safe from callbacks and tasks)."""
        self.queue.put_nowait(event)

    # === Control loop ===

    async def run(self) -> None:
        """Handle events until ShutdownRequested, then shut everything down."""
        if self.monitor is not None:
            self.monitor.start()
        if self.watcher is not None:
            self._watch_task = asyncio.create_task(self._pump_changes())

        self.post(ChangeSettled(initial=True))
        try:
            while True:
                event = await self.queue.get()
                if isinstance(event, ShutdownRequested):
                    logger.info("Shutting down...")
                    break
                await self.handle(event)
        finally:
            await self.shutdown()

    async def _pump_changes(self) -> None:
        assert self.watcher is not None
        async for batch in self.watcher.settled():
            self.post(ChangeSettled(changes=batch))

    async def handle(self, event: DevEvent) -> None:
        if isinstance(event, ChangeSettled):
            await self._on_change(event)
        elif isinstance(event, BuildFinished):
            await self._on_build_finished(event)
        elif isinstance(event, ServerReady):
            self._on_ready(event)
        elif isinstance(event, ServerRetrying):
            self._on_retrying(event)
        elif isinstance(event, ServerExited):
            self._on_exited(event)
        elif isinstance(event, HealthChanged):
            await self._on_health(event)
        elif isinstance(event, TypeCheckerMissing):
            await self._on_checker_missing(event)

    def _set_state(self, state: DevState) -> None:
        if state is not self.session.state:
            logger.debug(f"{self.session.state.value} -> {state.value}")
        self.session.state = state

    def _is_current(self, generation: int) -> bool:
        return generation == self.session.build_generation

    # === Rebuild cycle ===

    async def _on_change(self, event: ChangeSettled) -> None:
        if event.changes:
            files = ", ".join(change.path for change in event.changes[:3])
            more = len(event.changes) - 3
            logger.info(f"Change detected: {files}" + (f" (+{more} more)" if more > 0 else ""))
            if self.gated and not any(change.path == ENV_FILE for change in event.changes):
                # tsc sees source edits too; its clean result starts the rebuild
                logger.debug("Waiting for the type check to pick up the change")
                return
        await self._request_rebuild()

    async def _request_rebuild(self) -> None:
        if self.gated and self.health is not TypeHealth.HEALTHY:
            await self._block()
            return

        if self._build_task is not None and not self._build_task.done():
            # The in-flight result is now stale; one rebuild follows it.
            self.session.next_generation()
            self._pending_rebuild = True
            return

        await self._begin_build()

    async def _begin_build(self) -> None:
        generation = self.session.next_generation()
        self._pending_rebuild = False
        self._cycle_started = time.perf_counter()

        if self.state in (DevState.RUNNING, DevState.STARTING):
            self._set_state(DevState.RESTARTING)
        self._stop_status()
        await self.supervisor.kill()

        self._set_state(DevState.BUILDING)
        self._build_task = asyncio.create_task(self._run_build(generation))

    async def _run_build(self, generation: int) -> None:
        try:
            result = await self.pipeline.build()
        except Exception as e:
            logger.error(f"Build pipeline crashed: {e}")
            result = BuildResult.failed([BuildDiagnostic(message=str(e))])
        self.post(BuildFinished(generation=generation, result=result))

    async def _on_build_finished(self, event: BuildFinished) -> None:
        self._build_task = None

        if not self._is_current(event.generation):
            logger.debug(f"Discarding stale build (generation {event.generation})")
            if self._pending_rebuild:
                self._pending_rebuild = False
                await self._request_rebuild()
            return

        result = event.result
        if not result.success:
            render_diagnostics(result.diagnostics)
            logger.error("Build failed. Waiting for changes...")
            self._set_state(DevState.IDLE)
            return

        logger.debug(f"Build finished in {result.duration_ms}ms")
        self._set_state(DevState.STARTING)
        if self.supervisor.active:
            logger.warning("Engine still running after build, stopping it first")
            await self.supervisor.kill()
        self._start_status()
        await self.supervisor.start(event.generation)

    # === Engine events ===

    def _on_ready(self, event: ServerReady) -> None:
        if not self._is_current(event.generation) or self.state is not DevState.STARTING:
            return
        self._stop_status()
        self._set_state(DevState.RUNNING)
        logger.info(
            f"[✔] Titan is ready ({format_elapsed_ms(self._cycle_started)})"
        )

    def _on_retrying(self, event: ServerRetrying) -> None:
        if not self._is_current(event.generation) or self.state not in _ENGINE_STATES:
            return
        self._set_state(DevState.STARTING)

    def _on_exited(self, event: ServerExited) -> None:
        if not self._is_current(event.generation) or self.state not in _ENGINE_STATES:
            logger.debug(f"Ignoring engine exit from generation {event.generation}")
            return

        self._stop_status()
        self._set_state(DevState.IDLE)

        if event.kind is ExitKind.PORT_CONFLICT:
            port = f"Port {event.port}" if event.port is not None else "The configured port"
            logger.error(
                f"{port} is already in use. Stop the other process or change the "
                "port in app/app.js (or app/app.ts), e.g. t.start(3001). "
                "Waiting for changes..."
            )
        elif event.kind is ExitKind.RETRIES_EXHAUSTED:
            logger.error(
                f"Engine crashed repeatedly ({event.detail}). Waiting for changes..."
            )
        elif event.kind is ExitKind.SPAWN_FAILED:
            logger.error(f"Engine could not be started: {event.detail}")
        else:
            logger.warning(
                f"Engine exited with code {event.returncode}. Waiting for changes..."
            )

    # === Type health ===

    async def _on_health(self, event: HealthChanged) -> None:
        if self.monitor is not None and event.check_id < self.monitor.check_id:
            logger.debug(f"Dropping superseded type check result #{event.check_id}")
            return

        self.health = event.health
        if event.health is TypeHealth.UNHEALTHY:
            if self.state is not DevState.BLOCKED:
                await self._block()
        elif event.health is TypeHealth.HEALTHY:
            await self._request_rebuild()

    async def _on_checker_missing(self, event: TypeCheckerMissing) -> None:
        self.health = TypeHealth.UNKNOWN
        if not self._missing_warned:
            self._missing_warned = True
            logger.warning(
                f"{event.reason} Builds stay paused until type checking is available."
            )
        if self.state is not DevState.BLOCKED:
            await self._block()

    async def _block(self) -> None:
        self.session.next_generation()
        self._pending_rebuild = False
        if self.state is DevState.BLOCKED:
            return

        self._stop_status()
        self._set_state(DevState.BLOCKED)
        await self.supervisor.kill()
        if self.health is TypeHealth.UNKNOWN:
            logger.info("Waiting for the type check to pass...")
        else:
            logger.warning("Type errors found. Waiting for fixes...")

    # === Status spinner ===

    def _start_status(self) -> None:
        if not self.show_status:
            return
        self._stop_status()
        self._status = console.status(STABILIZING_MESSAGE, spinner="dots")
        self._status.start()
        self._slow_timer = asyncio.get_running_loop().call_later(
            self.config.slow_start_warning, self._slow_start
        )

    def _slow_start(self) -> None:
        if self._status is not None:
            self._status.update(STILL_STABILIZING_MESSAGE)

    def _stop_status(self) -> None:
        if self._slow_timer is not None:
            self._slow_timer.cancel()
            self._slow_timer = None
        if self._status is not None:
            self._status.stop()
            self._status = None

    # === Shutdown ===

    async def shutdown(self) -> None:
        """Stop every source and the engine. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_status()

        if self.watcher is not None:
            self.watcher.stop()
        for task in (self._watch_task, self._build_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._build_task = None

        await self.supervisor.kill()
        if self.monitor is not None:
            await self.monitor.stop()
