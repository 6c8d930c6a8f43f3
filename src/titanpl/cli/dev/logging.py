"""Centralized logging for `titan dev` (routing and CLI formatting)."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel

from titanpl.utils import PrefixedLogHandler


class DevLogComponent(str, Enum):
    """Where a log originated (used for prefixes and fine-grained levels)."""

    DEV = "dev"
    WATCHER = "watcher"
    BUILD = "build"
    TYPECHECK = "typecheck"
    ENGINE = "engine"
    SUPERVISOR = "supervisor"
    RETRY = "retry"


_COMPONENT_COLOR: dict[DevLogComponent, str] = {
    DevLogComponent.DEV: "bright_blue",
    DevLogComponent.WATCHER: "magenta",
    DevLogComponent.BUILD: "cyan",
    DevLogComponent.TYPECHECK: "bright_black",
    DevLogComponent.ENGINE: "green",
    DevLogComponent.SUPERVISOR: "bright_blue",
    DevLogComponent.RETRY: "yellow",
}


class _DevLogState(BaseModel):
    configured: bool = False


_STATE = _DevLogState()


def configure_dev_logging(*, verbose: bool = False) -> None:
    """Configure all dev loggers to print through the shared rich console."""
    level = logging.DEBUG if verbose else logging.INFO

    for component in DevLogComponent:
        logger = logging.getLogger(f"titanpl.dev.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        handler = PrefixedLogHandler(
            f"[{component.value}]", _COMPONENT_COLOR.get(component, "white")
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    _STATE.configured = True


def get_logger(component: DevLogComponent) -> logging.Logger:
    """Get a dev logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"titanpl.dev.{component.value}")
    if not _STATE.configured:
        # Avoid "No handlers could be found" warnings in contexts that don't configure dev logging.
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
        logger.propagate = False
    return logger

