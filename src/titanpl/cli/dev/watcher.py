"""Filesystem watching for titan dev.

Raw watchfiles notifications are narrowed to the files that can affect a
build, then coalesced by a trailing debounce into "settled" batches. Each
batch is one rebuild request for the coordinator.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from pathlib import Path

import watchfiles
from typing_extensions import override

from titanpl.cli.dev.logging import DevLogComponent, get_logger
from titanpl.constants import APP_DIR, ENV_FILE, IGNORED_DIRS, TSCONFIG_FILE
from titanpl.models import ChangeEvent, ChangeKind, DevConfig

logger = get_logger(DevLogComponent.WATCHER)

_CHANGE_KINDS: dict[watchfiles.Change, ChangeKind] = {
    watchfiles.Change.added: ChangeKind.added,
    watchfiles.Change.modified: ChangeKind.modified,
    watchfiles.Change.deleted: ChangeKind.deleted,
}


class ProjectChangeFilter(watchfiles.DefaultFilter):
    """Accept changes under app/, the .env file and tsconfig.json only.

    Build output, the compiled app, the server crate and node_modules are
    never watched, so writing artifacts cannot trigger another rebuild.
    """

    def __init__(self, root: Path, output_dir: Path | None = None):
        self.root = root.resolve()
        ignored = set(IGNORED_DIRS)
        if output_dir is not None:
            out = output_dir if output_dir.is_absolute() else self.root / output_dir
            with contextlib.suppress(ValueError):
                ignored.add(out.resolve().relative_to(self.root).parts[0])
        super().__init__(ignore_dirs=(*self.ignore_dirs, *sorted(ignored)))
        self._ignored_top = ignored

    @override
    def __call__(self, change: watchfiles.Change, path: str) -> bool:
        try:
            rel = Path(path).resolve().relative_to(self.root)
        except ValueError:
            return False
        parts = rel.parts
        if not parts or parts[0] in self._ignored_top:
            return False
        if parts[0] == APP_DIR:
            return super().__call__(change, path)
        return rel.as_posix() in (ENV_FILE, TSCONFIG_FILE)


async def watch_changes(
    root: Path,
    *,
    watch_filter: ProjectChangeFilter,
    step_ms: int,
    debounce_ms: int,
    stop_event: asyncio.Event | None = None,
) -> AsyncIterator[ChangeEvent]:
    """Yield every accepted filesystem change under root, one at a time."""
    async for changes in watchfiles.awatch(
        root,
        watch_filter=watch_filter,
        step=step_ms,
        debounce=debounce_ms,
        stop_event=stop_event,
    ):
        for change, path in sorted(changes, key=lambda c: c[1]):
            try:
                rel = Path(path).resolve().relative_to(watch_filter.root).as_posix()
            except ValueError:
                rel = path
            yield ChangeEvent(path=rel, kind=_CHANGE_KINDS[change])


async def settle(
    events: AsyncIterator[ChangeEvent], window: float
) -> AsyncIterator[list[ChangeEvent]]:
    """Trailing debounce: emit a batch once `window` seconds pass without a new event.

    Repeated changes to the same path collapse into the latest one.
    """
    queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()

    async def pump() -> None:
        try:
            async for event in events:
                queue.put_nowait(event)
        finally:
            queue.put_nowait(None)

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            first = await queue.get()
            if first is None:
                return

            batch: dict[str, ChangeEvent] = {first.path: first}
            exhausted = False
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), window)
                except asyncio.TimeoutError:
                    break
                if event is None:
                    exhausted = True
                    break
                batch.pop(event.path, None)
                batch[event.path] = event

            yield list(batch.values())
            if exhausted:
                return
    finally:
        pump_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump_task


class ChangeWatcher:
    """Settled change batches for one project."""

    def __init__(self, root: Path, config: DevConfig):
        self.root = root
        self.config = config
        self._stop_event = asyncio.Event()
        self.watch_filter = ProjectChangeFilter(root, config.output_dir)

    async def settled(self) -> AsyncIterator[list[ChangeEvent]]:
        raw = watch_changes(
            self.root,
            watch_filter=self.watch_filter,
            step_ms=self.config.watch_step_ms,
            debounce_ms=self.config.debounce_ms,
            stop_event=self._stop_event,
        )
        async for batch in settle(raw, self.config.debounce_seconds):
            logger.debug(
                "Settled change: " + ", ".join(f"{e.kind.value} {e.path}" for e in batch)
            )
            yield batch

    def stop(self) -> None:
        self._stop_event.set()
