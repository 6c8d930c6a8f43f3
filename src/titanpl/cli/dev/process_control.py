"""Cross-platform process tracking and termination for titan dev.

Design goals:
- Only stop processes we started (tracked by pid + create_time).
- One terminate capability, chosen once at startup: process-group signals on
  POSIX, a forceful process-tree kill on Windows.
- Never block the event loop: terminate/force_kill only send signals, waiting
  for the exit is the caller's job.
"""

from __future__ import annotations

import os
import signal
from typing import ClassVar, Protocol

import psutil
from pydantic import BaseModel, ConfigDict

from titanpl.cli.dev.logging import DevLogComponent, get_logger

logger = get_logger(DevLogComponent.SUPERVISOR)


class TrackedProcess(BaseModel):
    """A process we started and are allowed to manage.

    create_time protects against PID reuse. pgid enables POSIX process-group shutdown
    even if the original PID has already exited (common with cargo -> server handoff).
    """

    pid: int | None = None
    create_time: float | None = None
    pgid: int | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


def _get_pgid_safe(pid: int) -> int | None:
    # Windows doesn't have pgid.
    if os.name == "nt":
        return None
    try:
        return os.getpgid(pid)
    except OSError:
        return None


def track_process(pid: int) -> TrackedProcess:
    """Create a TrackedProcess for a running PID, recording create_time and pgid.

    Falls back to a pid-only record when the process already exited.
    """
    try:
        proc = psutil.Process(pid)
        return TrackedProcess(
            pid=pid,
            create_time=float(proc.create_time()),
            pgid=_get_pgid_safe(pid),
        )
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return TrackedProcess(pid=pid)


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """Return a psutil.Process only if PID matches create_time (prevents PID reuse bugs)."""
    if tp.pid is None or tp.create_time is None:
        return None
    try:
        proc = psutil.Process(tp.pid)
        if abs(float(proc.create_time()) - float(tp.create_time)) > 0.001:
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def _tree(proc: psutil.Process) -> list[psutil.Process]:
    try:
        children = proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []
    # Children first so the root cannot respawn them.
    return children + [proc]


class Terminator(Protocol):
    """Platform-specific way to stop a tracked process and its children."""

    name: str

    def terminate(self, tp: TrackedProcess) -> None: ...

    def force_kill(self, tp: TrackedProcess) -> None: ...


class PosixGroupTerminator:
    """Signal the whole process group: SIGTERM first, SIGKILL on force."""

    name = "posix-group"

    def _signal(self, tp: TrackedProcess, sig: signal.Signals) -> None:
        if tp.pgid is not None and tp.pgid != os.getpgid(0):
            try:
                os.killpg(tp.pgid, sig)
                return
            except ProcessLookupError:
                return
            except PermissionError as e:
                logger.debug(f"Cannot signal pgid={tp.pgid}: {e}")

        proc = validate_tracked(tp)
        if proc is None:
            return
        try:
            proc.send_signal(sig)
        except psutil.NoSuchProcess:
            pass

    def terminate(self, tp: TrackedProcess) -> None:
        logger.debug(f"Sending SIGTERM to pid={tp.pid} pgid={tp.pgid}")
        self._signal(tp, signal.SIGTERM)

    def force_kill(self, tp: TrackedProcess) -> None:
        logger.debug(f"Sending SIGKILL to pid={tp.pid} pgid={tp.pgid}")
        self._signal(tp, signal.SIGKILL)


class WindowsTreeTerminator:
    """Forcefully kill the process tree (the `taskkill /pid <pid> /t /f` equivalent)."""

    name = "windows-tree"

    def terminate(self, tp: TrackedProcess) -> None:
        proc = validate_tracked(tp)
        if proc is None:
            return
        logger.debug(f"Killing process tree of pid={tp.pid}")
        for p in _tree(proc):
            try:
                p.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

    def force_kill(self, tp: TrackedProcess) -> None:
        self.terminate(tp)


def select_terminator() -> Terminator:
    """Pick the terminate capability for this platform."""
    if os.name == "nt":
        return WindowsTreeTerminator()
    return PosixGroupTerminator()


def new_session_kwargs() -> dict[str, object]:
    """Subprocess kwargs that put a child in its own process group/session."""
    if os.name == "nt":
        import subprocess

        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}  # type: ignore[attr-defined]
    return {"start_new_session": True}
