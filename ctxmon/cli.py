"""CLI entry point for ctxmon."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from rich.table import Table

from ctxmon.config import Config, load_config
from ctxmon.console import get_console, print_error, print_muted
from ctxmon.discovery import discover
from ctxmon.models import DEFAULT_CONTEXT_LIMITS, ModelCatalog, context_limit
from ctxmon.monitor import MonitorEngine
from ctxmon.presentation import StatusPrinter, format_context_limit, render_details
from ctxmon.rpc import RpcClient
from ctxmon.states import State
from ctxmon.tracker import fetch_model_configs

log = logging.getLogger(__name__)


def _load(args: argparse.Namespace) -> Config:
    config = load_config(args.config)
    if args.workspace is not None:
        config.workspace = args.workspace
    if args.no_workspace:
        config.no_workspace = True
    if args.interval is not None:
        config.polling_interval = max(1, args.interval)
    return config


async def _watch(config: Config) -> None:
    engine = MonitorEngine(config, sink=StatusPrinter())
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGUSR1, lambda: asyncio.ensure_future(engine.refresh()))
    except (NotImplementedError, AttributeError):
        log.debug("Manual refresh via SIGUSR1 unavailable on this platform")
    print_muted(f"Watching {config.workspace_uri or 'conversations without a workspace'} "
                f"every {config.polling_interval}s (Ctrl-C to stop)")
    await engine.run()


def cmd_watch(args: argparse.Namespace) -> int:
    config = _load(args)
    try:
        asyncio.run(_watch(config))
    except KeyboardInterrupt:
        print_muted("Stopped.")
    return 0


async def _status(config: Config) -> State:
    engine = MonitorEngine(config)
    try:
        await engine.poll()
    finally:
        await engine.invalidate()
    render_details(engine.snapshot(engine.ctx.last_error))
    return engine.ctx.state


def cmd_status(args: argparse.Namespace) -> int:
    config = _load(args)
    final = asyncio.run(_status(config))
    return 1 if final == State.DISCONNECTED else 0


def cmd_discover(args: argparse.Namespace) -> int:
    config = _load(args)
    ls = asyncio.run(discover(
        config.workspace_uri,
        command_timeout=config.discovery_timeout,
        probe_timeout=config.probe_timeout,
    ))
    if ls is None:
        print_error("No reachable language server found.")
        return 1
    console = get_console()
    console.print(f"PID:      {ls.pid}")
    console.print(f"Endpoint: {ls.base_url}")
    return 0


async def _models(config: Config) -> ModelCatalog | None:
    ls = await discover(
        config.workspace_uri,
        command_timeout=config.discovery_timeout,
        probe_timeout=config.probe_timeout,
    )
    if ls is None:
        return None
    catalog = ModelCatalog()
    async with RpcClient(ls, max_response_bytes=config.max_response_bytes) as client:
        catalog.update_display_names(await fetch_model_configs(client, config.rpc_timeout))
    return catalog


def cmd_models(args: argparse.Namespace) -> int:
    config = _load(args)
    catalog = asyncio.run(_models(config))
    if catalog is None:
        print_muted("Language server not reachable; showing built-in models only.")
        catalog = ModelCatalog()

    table = Table(title="Models")
    table.add_column("Model ID", style="bold")
    table.add_column("Name")
    table.add_column("Context limit", justify="right")
    for model in sorted(set(catalog.display_names) | set(DEFAULT_CONTEXT_LIMITS)):
        limit = context_limit(model, config.context_limits)
        table.add_row(model, catalog.display_name(model), format_context_limit(limit))
    get_console().print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ctxmon",
        description="Context-window usage monitor for Antigravity conversations",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.yaml (default: bundled config)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument("--workspace", "-w", default=None, help="Workspace path or file:// URI (default: cwd)")
    parser.add_argument("--no-workspace", action="store_true", help="Only watch conversations without a workspace")
    parser.add_argument("--interval", "-i", type=int, default=None, help="Polling interval in seconds")
    sub = parser.add_subparsers(dest="command")

    # watch
    sub.add_parser("watch", help="Poll continuously and print usage changes (SIGUSR1 refreshes)")

    # status
    sub.add_parser("status", help="Poll once and show detailed usage")

    # discover
    sub.add_parser("discover", help="Locate the language server")

    # models
    sub.add_parser("models", help="List known models with display names and context limits")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    commands = {
        "watch": cmd_watch,
        "status": cmd_status,
        "discover": cmd_discover,
        "models": cmd_models,
    }

    if args.command is None:
        parser.print_help()
        return 0

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    return handler(args)
