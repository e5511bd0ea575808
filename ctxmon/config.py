"""YAML config loader."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

log = logging.getLogger(__name__)

_DEFAULT_CONFIG = Path(__file__).resolve().parent.parent / "config.yaml"


@dataclass
class Config:
    polling_interval: int = 5  # seconds
    context_limits: dict[str, int] = field(default_factory=dict)
    workspace: str | None = None  # path or file:// URI; None = current directory
    no_workspace: bool = False  # only watch conversations not tied to any workspace
    state_dir: str = "~/.ctxmon"
    rpc_timeout: float = 10.0
    steps_timeout: float = 30.0
    probe_timeout: float = 3.0
    discovery_timeout: float = 5.0
    max_response_bytes: int = 50 * 1024 * 1024
    recent_limit: int = 5

    def __post_init__(self) -> None:
        self.polling_interval = max(1, int(self.polling_interval))
        self.context_limits = _clean_limits(self.context_limits)

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    @property
    def workspace_uri(self) -> str | None:
        """The workspace as a file:// URI, or None when watching orphans only."""
        if self.no_workspace:
            return None
        if self.workspace and self.workspace.startswith("file://"):
            return self.workspace
        path = Path(self.workspace).expanduser() if self.workspace else Path.cwd()
        return path.resolve().as_uri()


def _clean_limits(raw: object) -> dict[str, int]:
    """Keep integer-valued entries, each clamped to at least 1."""
    if not isinstance(raw, dict):
        return {}
    limits: dict[str, int] = {}
    for model, value in raw.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            log.warning("Ignoring non-numeric context limit for %s: %r", model, value)
            continue
        limits[str(model)] = max(1, int(value))
    return limits


def load_config(path: str | Path | None = None) -> Config:
    """Load config from YAML, falling back to defaults."""
    if path is None:
        path = _DEFAULT_CONFIG
    path = Path(path)
    if not path.exists():
        return Config()
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return Config(**{k: v for k, v in raw.items() if k in Config.__dataclass_fields__})
