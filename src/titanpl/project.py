"""Project detection for titan dev."""

from pathlib import Path

from titanpl.constants import ACTIONS_DIR, ENV_FILE, SERVER_DIR, TSCONFIG_FILE
from titanpl.models import DevSession, ProjectInfo


def detect_project(root: Path) -> ProjectInfo:
    """Inspect a project directory and report its flavor.

    A project is statically typed when it has a tsconfig.json or an
    app/app.ts entry, and has native actions when app/actions holds any
    Rust source file.
    """
    root = root.resolve()
    actions_dir = root / ACTIONS_DIR

    has_native_actions = actions_dir.is_dir() and any(
        p.suffix == ".rs" for p in actions_dir.iterdir()
    )

    return ProjectInfo(
        root=root,
        uses_static_typing=(root / TSCONFIG_FILE).exists()
        or (root / "app" / "app.ts").exists(),
        has_native_actions=has_native_actions,
        has_env_file=(root / ENV_FILE).exists(),
        has_cargo_server=(root / SERVER_DIR / "Cargo.toml").exists(),
    )


def create_session(info: ProjectInfo, *, typecheck: bool | None = None) -> DevSession:
    """Create the DevSession for one `titan dev` run.

    `typecheck=False` turns type gating off even for TypeScript projects.
    """
    uses_static_typing = info.uses_static_typing if typecheck is None else (
        typecheck and info.uses_static_typing
    )
    return DevSession(
        root=info.root,
        uses_static_typing=uses_static_typing,
        has_native_actions=info.has_native_actions,
    )
