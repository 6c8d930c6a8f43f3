"""Classification of subprocess output into named dev-loop events.

Everything that infers meaning from engine or type-checker text lives here,
so the supervisor and coordinator only ever see already-classified values.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from titanpl.constants import BANNER_FRAGMENTS
from titanpl.models import ExitKind, ServerLineKind, TypeCheckLine, TypeCheckLineKind
from titanpl.utils import strip_ansi

_ERROR_COUNT = re.compile(r"Found (\d+) errors?\b")
_PORT_HINT = re.compile(r"(?:port\s+|[\w.\]]:)(\d{2,5})\b", re.IGNORECASE)


# === Engine output ===


def is_banner_line(line: str) -> bool:
    return any(fragment in line for fragment in BANNER_FRAGMENTS)


def classify_server_line(line: str, ready_markers: Sequence[str]) -> ServerLineKind:
    text = strip_ansi(line)
    if any(marker in text for marker in ready_markers):
        return ServerLineKind.READY
    if is_banner_line(text):
        return ServerLineKind.BANNER
    return ServerLineKind.OTHER


def find_port_conflict(lines: Iterable[str], signatures: Sequence[str]) -> str | None:
    """Return the first port-conflict signature found in captured output."""
    for line in lines:
        for signature in signatures:
            if signature in line:
                return signature
    return None


def extract_port(lines: Iterable[str]) -> int | None:
    """Best-effort port number mentioned next to an address-in-use error."""
    for line in lines:
        match = _PORT_HINT.search(line)
        if match:
            port = int(match.group(1))
            if 0 < port < 65536:
                return port
    return None


def classify_exit(
    returncode: int | None,
    *,
    uptime: float,
    killed: bool,
    port_conflict: bool,
    stability_threshold: float,
) -> ExitKind:
    """Decide what an engine exit means for the supervisor.

    A negative return code is a signal termination, which is treated the same
    as a clean exit: it is a lifecycle end, not a crash.
    """
    if killed:
        return ExitKind.KILLED
    if returncode is None or returncode <= 0:
        return ExitKind.STOPPED
    if port_conflict:
        return ExitKind.PORT_CONFLICT
    if uptime < stability_threshold:
        return ExitKind.FAST_CRASH
    return ExitKind.STOPPED


# === Type-checker output ===


def classify_typecheck_line(line: str) -> TypeCheckLine:
    text = strip_ansi(line).rstrip()
    stripped = text.strip()

    if "File change detected" in stripped or "Starting compilation" in stripped:
        return TypeCheckLine(kind=TypeCheckLineKind.CHECK_STARTED, text=text)

    match = _ERROR_COUNT.search(stripped)
    if match:
        count = int(match.group(1))
        if count == 0:
            return TypeCheckLine(kind=TypeCheckLineKind.CLEAN, text=text)
        return TypeCheckLine(
            kind=TypeCheckLineKind.ERRORS, error_count=count, text=text
        )

    if "error TS" in stripped:
        return TypeCheckLine(kind=TypeCheckLineKind.ERROR_DETAIL, text=text)

    return TypeCheckLine(kind=TypeCheckLineKind.OTHER, text=text)
