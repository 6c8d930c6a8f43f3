"""Centralized Pydantic models, enums, and type aliases for titan dev."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import ClassVar, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

from titanpl.constants import (
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_KILL_TIMEOUT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SLOW_START_WARNING,
    DEFAULT_STABILITY_THRESHOLD,
    DEFAULT_TYPECHECK_MAX_RESTARTS,
    DEFAULT_WATCH_STEP_MS,
    PORT_CONFLICT_SIGNATURES,
    READY_MARKERS,
)


# === Enums ===


class TypeHealth(str, Enum):
    """Summary of the last known static type check."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class DevState(str, Enum):
    """States of the dev-loop coordinator."""

    IDLE = "idle"
    BUILDING = "building"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    BLOCKED = "blocked"


class ChangeKind(str, Enum):
    added = "added"
    modified = "modified"
    deleted = "deleted"


class ExitKind(str, Enum):
    """How a supervised engine run ended."""

    KILLED = "killed"
    PORT_CONFLICT = "port_conflict"
    FAST_CRASH = "fast_crash"
    RETRIES_EXHAUSTED = "retries_exhausted"
    SPAWN_FAILED = "spawn_failed"
    STOPPED = "stopped"


class ServerLineKind(str, Enum):
    READY = "ready"
    BANNER = "banner"
    OTHER = "other"


class TypeCheckLineKind(str, Enum):
    CHECK_STARTED = "check_started"
    CLEAN = "clean"
    ERRORS = "errors"
    ERROR_DETAIL = "error_detail"
    OTHER = "other"


# === Configuration ===


class DevConfig(BaseModel):
    """Complete configuration for the dev loop.

    This is the single source of truth for all dev loop configuration.
    All default values are defined here and should not be repeated elsewhere.
    """

    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    watch_step_ms: int = DEFAULT_WATCH_STEP_MS
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    stability_threshold: float = DEFAULT_STABILITY_THRESHOLD
    retry_delay: float = DEFAULT_RETRY_DELAY
    max_retries: int = DEFAULT_MAX_RETRIES
    slow_start_warning: float = DEFAULT_SLOW_START_WARNING
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)
    typecheck: bool | None = None
    typecheck_max_restarts: int = DEFAULT_TYPECHECK_MAX_RESTARTS
    ready_markers: list[str] = Field(default_factory=lambda: list(READY_MARKERS))
    port_conflict_signatures: list[str] = Field(
        default_factory=lambda: list(PORT_CONFLICT_SIGNATURES)
    )

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000


# === Project Models ===


class ProjectInfo(BaseModel):
    """What the dev loop needs to know about a project directory."""

    root: Path
    uses_static_typing: bool = False
    has_native_actions: bool = False
    has_env_file: bool = False
    has_cargo_server: bool = False

    @property
    def mode_label(self) -> str:
        lang = "TS" if self.uses_static_typing else "JS"
        if self.has_native_actions:
            return f"Rust + {lang} Actions"
        return f"{lang} Actions"


class DevSession(BaseModel):
    """Process-wide mutable state for one invocation of `titan dev`."""

    root: Path
    uses_static_typing: bool
    has_native_actions: bool
    build_generation: int = 0
    state: DevState = DevState.BUILDING

    def next_generation(self) -> int:
        self.build_generation += 1
        return self.build_generation


class ChangeEvent(BaseModel):
    path: str
    kind: ChangeKind

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class ServerCommand(BaseModel):
    """How to launch the engine process."""

    argv: list[str]
    cwd: Path
    env: dict[str, str] = Field(default_factory=dict)


# === Build Models ===


class BuildDiagnostic(BaseModel):
    title: str = "Build Error"
    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None

    @property
    def location(self) -> str | None:
        if self.file is None:
            return None
        if self.line is None:
            return self.file
        if self.column is None:
            return f"{self.file}:{self.line}"
        return f"{self.file}:{self.line}:{self.column}"


class BuildResult(BaseModel):
    """Outcome of one build pipeline run."""

    success: bool
    artifact_paths: list[Path] = Field(default_factory=list)
    diagnostics: list[BuildDiagnostic] = Field(default_factory=list)
    duration_ms: int = 0

    @classmethod
    def ok(cls, artifact_paths: list[Path], duration_ms: int = 0) -> BuildResult:
        return cls(success=True, artifact_paths=artifact_paths, duration_ms=duration_ms)

    @classmethod
    def failed(
        cls, diagnostics: list[BuildDiagnostic], duration_ms: int = 0
    ) -> BuildResult:
        return cls(success=False, diagnostics=diagnostics, duration_ms=duration_ms)


class TypeCheckLine(BaseModel):
    kind: TypeCheckLineKind
    error_count: int = 0
    text: str = ""


# === Dev Loop Events ===


class _Event(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class ChangeSettled(_Event):
    """A debounced batch of file changes (or the implicit change at startup)."""

    changes: list[ChangeEvent] = Field(default_factory=list)
    initial: bool = False


class HealthChanged(_Event):
    health: TypeHealth
    check_id: int
    error_count: int = 0


class TypeCheckerMissing(_Event):
    reason: str


class BuildFinished(_Event):
    generation: int
    result: BuildResult


class ServerReady(_Event):
    generation: int
    pid: int | None = None


class ServerRetrying(_Event):
    generation: int
    attempt: int
    delay: float


class ServerExited(_Event):
    generation: int
    kind: ExitKind
    returncode: int | None = None
    uptime: float = 0.0
    port: int | None = None
    signature: str | None = None
    detail: str | None = None


class ShutdownRequested(_Event):
    """SIGINT/SIGTERM was received."""


DevEvent: TypeAlias = (
    ChangeSettled
    | HealthChanged
    | TypeCheckerMissing
    | BuildFinished
    | ServerReady
    | ServerRetrying
    | ServerExited
    | ShutdownRequested
)
