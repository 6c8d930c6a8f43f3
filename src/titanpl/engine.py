"""Locating and describing the engine process that serves a Titan app."""

from __future__ import annotations

import os
import platform
import sys
from pathlib import Path

from dotenv import dotenv_values

from titanpl.constants import DEV_MODE_ENV, ENGINE_BINARY_ENV, ENV_FILE, SERVER_DIR
from titanpl.models import ProjectInfo, ServerCommand

_PLATFORM_NAMES = {"darwin": "darwin", "linux": "linux", "win32": "win32"}
_ARCH_NAMES = {
    "x86_64": "x64",
    "amd64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
}


def engine_binary_name() -> str:
    return "titan-server.exe" if sys.platform == "win32" else "titan-server"


def engine_package_name() -> str:
    """npm package that ships the prebuilt engine for this machine."""
    plat = _PLATFORM_NAMES.get(sys.platform, sys.platform)
    machine = platform.machine().lower()
    arch = _ARCH_NAMES.get(machine, machine)
    return f"@titanpl/engine-{plat}-{arch}"


def _global_prefixes() -> list[Path]:
    prefixes = [
        os.environ.get("npm_config_prefix"),
        str(Path.home() / ".npm-global"),
        "/usr/local/lib",
        "/usr/lib",
    ]
    return [Path(p) for p in prefixes if p]


def resolve_engine_binary(root: Path) -> Path | None:
    """Find the engine executable for a project.

    Lookup order:
    1. TITAN_ENGINE_BINARY environment variable
    2. engine/target/release in the project or up to five parent directories
    3. the platform package in the project's node_modules
    4. the platform package under common global npm prefixes
    """
    override = os.environ.get(ENGINE_BINARY_ENV)
    if override and Path(override).exists():
        return Path(override)

    bin_name = engine_binary_name()
    current = root.resolve()
    for _ in range(5):
        candidate = current / "engine" / "target" / "release" / bin_name
        if candidate.exists():
            return candidate
        if current.parent == current:
            break
        current = current.parent

    pkg_name = engine_package_name()
    local = root / "node_modules" / pkg_name / "bin" / bin_name
    if local.exists():
        return local

    for prefix in _global_prefixes():
        candidate = prefix / "node_modules" / pkg_name / "bin" / bin_name
        if candidate.exists():
            return candidate

    return None


def load_env_file(root: Path) -> dict[str, str]:
    """Read the project's .env file (re-read on every engine start)."""
    env_path = root / ENV_FILE
    if not env_path.exists():
        return {}
    return {k: v for k, v in dotenv_values(env_path).items() if v is not None}


def resolve_server_command(info: ProjectInfo, output_dir: Path) -> ServerCommand | None:
    """Describe how to launch the engine for this project.

    Cargo-flavored projects compile and run their own server crate; the
    others run the prebuilt engine binary against the build output. Returns
    None when no engine can be found.
    """
    root = info.root
    server_dir = root / SERVER_DIR
    env = {**os.environ, **load_env_file(root), **DEV_MODE_ENV}

    if info.has_cargo_server:
        env["CARGO_INCREMENTAL"] = "1"
        return ServerCommand(argv=["cargo", "run", "--quiet"], cwd=server_dir, env=env)

    binary = resolve_engine_binary(root)
    if binary is None:
        return None

    dist = output_dir if output_dir.is_absolute() else root / output_dir
    return ServerCommand(
        argv=[str(binary), "run", str(dist), "--watch"],
        cwd=server_dir if server_dir.is_dir() else root,
        env=env,
    )
