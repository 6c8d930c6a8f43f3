"""Exception types shared by the build pipeline and the dev loop."""

from __future__ import annotations

from titanpl.models import BuildDiagnostic


class TitanError(Exception):
    """Base class for titan dev errors."""


class BuildError(TitanError):
    """A build step failed; carries structured diagnostics."""

    def __init__(self, message: str, diagnostics: list[BuildDiagnostic] | None = None):
        super().__init__(message)
        self.diagnostics: list[BuildDiagnostic] = diagnostics or [
            BuildDiagnostic(message=message)
        ]


class ServerSpawnError(TitanError):
    """The engine executable could not be launched."""


class FastCrashError(TitanError):
    """The engine exited unexpectedly before the stability threshold."""

    def __init__(self, returncode: int | None, uptime: float):
        super().__init__(
            f"Engine exited with code {returncode} after {uptime:.1f}s"
        )
        self.returncode = returncode
        self.uptime = uptime


class PortConflictError(TitanError):
    """The engine could not bind its port because another process holds it."""

    def __init__(self, signature: str, port: int | None = None):
        super().__init__(f"Port already in use ({signature})")
        self.signature = signature
        self.port = port


class TypeCheckerUnavailable(TitanError):
    """The TypeScript compiler could not be found or started."""


class SupervisorMisuseError(TitanError):
    """start() was called while a server process is still owned by the supervisor."""
