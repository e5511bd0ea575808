"""Thin wrapper around rich.Console with project theme and helper functions."""

from __future__ import annotations

from rich.console import Console
from rich.theme import Theme

_THEME = Theme(
    {
        "ok": "bold green",
        "warning": "bold yellow",
        "error": "bold red",
        "critical": "bold white on red",
        "compressing": "bold magenta",
        "muted": "dim",
        "title": "bold cyan",
    }
)

_console: Console | None = None


def new_console(**kwargs) -> Console:
    """A Console carrying the project theme."""
    return Console(theme=_THEME, **kwargs)


def get_console() -> Console:
    """Return the singleton Console instance."""
    global _console
    if _console is None:
        _console = new_console()
    return _console


def set_console(console: Console) -> None:
    """Replace the singleton Console (test seam)."""
    global _console
    _console = console


def print_error(msg: str) -> None:
    get_console().print(f"[error]{msg}[/error]")


def print_muted(text: str) -> None:
    """Print dim text for secondary info."""
    get_console().print(f"[muted]{text}[/muted]")
