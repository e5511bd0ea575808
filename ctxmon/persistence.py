"""Per-workspace monitor state under <state_dir>/workspaces/<slug>.json."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("~/.ctxmon").expanduser()
NO_WORKSPACE_KEY = "no-workspace"


@dataclass
class WorkspaceState:
    workspace_key: str
    last_known_model: str = ""


def _slugify(workspace_key: str) -> str:
    """Readable file stem for a workspace, disambiguated by a short hash."""
    slug = re.sub(r"[^a-z0-9]+", "-", workspace_key.lower()).strip("-")
    slug = slug[-40:].lstrip("-") or "workspace"
    digest = hashlib.sha1(workspace_key.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


def _state_path(workspace_key: str, state_dir: Path) -> Path:
    return state_dir / "workspaces" / f"{_slugify(workspace_key)}.json"


def save_workspace_state(ws: WorkspaceState, state_dir: Path = DEFAULT_STATE_DIR) -> None:
    """Atomically write workspace state to JSON (tmp + rename)."""
    if not ws.workspace_key:
        raise ValueError("WorkspaceState.workspace_key is required")

    path = _state_path(ws.workspace_key, state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with open(fd, "w") as f:
            json.dump(asdict(ws), f, indent=2)
        Path(tmp).replace(path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def load_workspace_state(workspace_key: str, state_dir: Path = DEFAULT_STATE_DIR) -> WorkspaceState:
    """Load state for *workspace_key*; a missing or unreadable file yields a fresh state."""
    path = _state_path(workspace_key, state_dir)
    if not path.exists():
        return WorkspaceState(workspace_key=workspace_key)
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        log.warning("Ignoring unreadable state file %s: %s", path, e)
        return WorkspaceState(workspace_key=workspace_key)
    if not isinstance(data, dict):
        return WorkspaceState(workspace_key=workspace_key)
    return WorkspaceState(
        workspace_key=workspace_key,
        last_known_model=str(data.get("last_known_model") or ""),
    )
