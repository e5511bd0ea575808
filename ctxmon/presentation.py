"""Rendering of monitor snapshots: status line, details and recent conversations."""

from __future__ import annotations

from dataclasses import dataclass

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ctxmon.console import get_console
from ctxmon.monitor import MonitorSnapshot
from ctxmon.states import State
from ctxmon.tracker import ContextUsage


def _trim_zero(value: float) -> str:
    return f"{value:.1f}".removesuffix(".0")


def format_token_count(count: int) -> str:
    """45231 -> '45.2k', 1500000 -> '1.5M'."""
    count = max(0, count)
    if count >= 1_000_000:
        return f"{_trim_zero(count / 1_000_000)}M"
    if count >= 1_000:
        return f"{_trim_zero(count / 1_000)}k"
    return str(count)


def format_context_limit(limit: int) -> str:
    """200000 -> '200k', 1000000 -> '1M', 128500 -> '128.5k'."""
    limit = max(0, limit)
    if limit >= 1_000_000:
        return f"{_trim_zero(limit / 1_000_000)}M"
    if limit >= 1_000:
        value = limit / 1_000
        return f"{int(value)}k" if value == int(value) else f"{value:.1f}k"
    return str(limit)


def format_percent(usage_percent: float) -> str:
    if usage_percent > 100:
        return "~100%"
    return f"{_trim_zero(usage_percent)}%"


def severity(usage_percent: float) -> str:
    if usage_percent >= 95:
        return "critical"
    if usage_percent >= 80:
        return "error"
    if usage_percent >= 50:
        return "warning"
    return "ok"


@dataclass
class CompressionStats:
    source: str  # "context" or "checkpoint"
    drop_tokens: int
    drop_percent: float


def calculate_compression_stats(usage: ContextUsage) -> CompressionStats | None:
    """Size of the last compression.

    The cross-poll drop wins when known; otherwise the checkpoint input drop
    is reported relative to the input before it.
    """
    if not usage.compression_detected:
        return None

    prev = usage.previous_context_used
    if prev is not None and prev > usage.context_used:
        drop = prev - usage.context_used
        return CompressionStats("context", drop, drop / prev * 100 if prev > 0 else 0.0)

    drop = usage.checkpoint_compression_drop
    if drop > 0:
        current_input = usage.last_model_usage.input_tokens if usage.last_model_usage else None
        previous_input = current_input + drop if current_input is not None else 0
        return CompressionStats("checkpoint", drop, drop / previous_input * 100 if previous_input > 0 else 0.0)

    return None


# -- Status line --


def usage_line(usage: ContextUsage) -> str:
    used = format_token_count(usage.context_used)
    limit = format_context_limit(usage.context_limit)
    level = severity(usage.usage_percent)
    line = f"[{level}]{used}/{limit}, {format_percent(usage.usage_percent)}[/{level}]"
    if usage.usage_percent > 100:
        line += " [compressing]compressing[/compressing]"
    elif usage.compression_detected:
        line += " [compressing]compressed[/compressing]"
    if usage.is_estimated:
        line += " [muted](estimated)[/muted]"
    if usage.has_gaps:
        line += " [warning]! incomplete[/warning]"
    return line


def status_line(snapshot: MonitorSnapshot) -> str:
    """One-line summary for the current display mode."""
    idle_limit = format_context_limit(snapshot.idle_context_limit)
    if snapshot.state == State.INITIALIZING:
        return "[muted]Context: connecting...[/muted]"
    if snapshot.state == State.DISCONNECTED:
        return f"[error]Context: N/A[/error] [muted]({escape(snapshot.reason or 'disconnected')})[/muted]"
    if snapshot.state == State.NO_CONVERSATIONS:
        return f"0k/{idle_limit}, 0.0% [muted](no conversation)[/muted]"
    if snapshot.state == State.IDLE or snapshot.current is None:
        return f"0k/{idle_limit}, 0.0% [muted](idle)[/muted]"
    usage = snapshot.current
    return f"[title]{escape(usage.model_display_name)}[/title] {usage_line(usage)}"


# -- Detail views --


def details_table(usage: ContextUsage) -> Table:
    table = Table(title=escape(usage.title or usage.cascade_id[:8]), show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Model", escape(usage.model_display_name))
    table.add_row("Context used", f"{usage.context_used:,} tokens")
    table.add_row("Model output", f"{usage.total_output_tokens:,} tokens")
    table.add_row("Tool results", f"{usage.total_tool_call_output_tokens:,} tokens")
    table.add_row("Limit", f"{usage.context_limit:,} tokens")
    table.add_row("Usage", f"{usage.usage_percent:.1f}%")

    if usage.usage_percent > 100:
        table.add_row("Compressing", "context will shrink once compression completes")
    elif usage.compression_detected:
        if usage.previous_context_used is not None:
            table.add_row("Before compression", f"{usage.previous_context_used:,} tokens")
        stats = calculate_compression_stats(usage)
        if stats is not None:
            label = "Context drop" if stats.source == "context" else "Checkpoint input drop"
            table.add_row(label, f"{stats.drop_tokens:,} tokens ({stats.drop_percent:.1f}%)")
    else:
        table.add_row("Remaining", f"{max(0, usage.context_limit - usage.context_used):,} tokens")

    table.add_row("Data source", "estimated" if usage.is_estimated else "precise (checkpoint)")
    if usage.estimated_delta_since_checkpoint > 0:
        table.add_row("Since checkpoint", f"+{usage.estimated_delta_since_checkpoint:,} tokens (estimated)")
    if usage.image_gen_step_count > 0:
        table.add_row("Image generation", f"{usage.image_gen_step_count} step(s)")
    if usage.has_gaps:
        table.add_row("[warning]Incomplete[/warning]", "some step batches failed to load")
    table.add_row("Steps", str(usage.step_count))
    return table


def recent_table(recent: list[ContextUsage], current_id: str | None = None) -> Table:
    table = Table(title="Recent conversations")
    table.add_column("", width=1)
    table.add_column("Title")
    table.add_column("Model")
    table.add_column("Usage")
    table.add_column("Steps", justify="right")
    for usage in recent:
        marker = "*" if usage.cascade_id == current_id else ""
        table.add_row(
            marker,
            escape(usage.title[:40]),
            escape(usage.model_display_name),
            usage_line(usage),
            str(usage.step_count),
        )
    return table


def render_details(snapshot: MonitorSnapshot, console: Console | None = None) -> None:
    console = console or get_console()
    console.print(status_line(snapshot))
    if snapshot.current is not None:
        console.print(details_table(snapshot.current))
    if snapshot.recent:
        current_id = snapshot.current.cascade_id if snapshot.current else None
        console.print(recent_table(snapshot.recent, current_id))


class StatusPrinter:
    """Sink printing the status line whenever it changes."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or get_console()
        self._last = ""

    def __call__(self, snapshot: MonitorSnapshot) -> None:
        line = status_line(snapshot)
        if line != self._last:
            self._last = line
            self.console.print(line)
