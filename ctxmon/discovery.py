"""Locate the language server process, its CSRF token, and its RPC port."""

from __future__ import annotations

import asyncio
import logging
import re

import httpx

from ctxmon.rpc import LanguageServerInfo, RpcClient, RpcError, metadata_payload

log = logging.getLogger(__name__)

PROCESS_MARKERS = ("language_server", "antigravity")
PROBE_ENDPOINT = "GetUnleashData"
PROBE_MAX_BYTES = 1024 * 1024

_PID_RE = re.compile(r"^\s*(\d+)\s")
_CSRF_RE = re.compile(r"--csrf_token\s+(\S+)")
_WORKSPACE_RE = re.compile(r"--workspace_id\s+(\S+)")
_PORT_RE = re.compile(r"127\.0\.0\.1:(\d+)\s")


def build_workspace_id(workspace_uri: str) -> str:
    """Mirror the server's --workspace_id encoding: file:///a/b -> file_a_b."""
    return workspace_uri.replace(":///", "_", 1).replace("/", "_")


def extract_pid(line: str) -> int | None:
    m = _PID_RE.match(line.strip() + " ")
    return int(m.group(1)) if m else None


def extract_csrf_token(line: str) -> str | None:
    m = _CSRF_RE.search(line)
    return m.group(1) if m else None


def extract_workspace_id(line: str) -> str | None:
    m = _WORKSPACE_RE.search(line)
    return m.group(1) if m else None


def extract_port(line: str) -> int | None:
    m = _PORT_RE.search(line + " ")
    return int(m.group(1)) if m else None


def filter_server_lines(ps_output: str) -> list[str]:
    return [
        line for line in ps_output.splitlines()
        if all(marker in line for marker in PROCESS_MARKERS)
    ]


def pick_server_line(lines: list[str], workspace_uri: str | None) -> str | None:
    """Prefer the process serving *workspace_uri*, else the first one."""
    if not lines:
        return None
    if workspace_uri:
        expected = build_workspace_id(workspace_uri)
        for line in lines:
            if extract_workspace_id(line) == expected:
                return line
    return lines[0]


async def _run(args: list[str], timeout: float) -> str | None:
    """Run a command without a shell; return stdout, or None on any failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except (FileNotFoundError, PermissionError, OSError) as e:
        log.debug("%s unavailable: %s", args[0], e)
        return None
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        log.debug("%s timed out after %ss", args[0], timeout)
        return None
    except asyncio.CancelledError:
        proc.kill()
        raise
    if proc.returncode != 0:
        log.debug("%s exited with %s", args[0], proc.returncode)
        return None
    return stdout.decode("utf-8", errors="replace")


async def probe_port(
    port: int,
    csrf_token: str,
    use_tls: bool,
    *,
    timeout: float = 3.0,
    cancel: asyncio.Event | None = None,
    http: httpx.AsyncClient | None = None,
) -> bool:
    """True when the port answers a lightweight RPC with 2xx and a JSON body."""
    ls = LanguageServerInfo(pid=0, csrf_token=csrf_token, port=port, use_tls=use_tls)
    async with RpcClient(ls, http=http, cancel=cancel, max_response_bytes=PROBE_MAX_BYTES) as client:
        try:
            await client.call(
                PROBE_ENDPOINT,
                metadata_payload(ideVersion="unknown", locale="en"),
                timeout=timeout,
            )
        except RpcError as e:
            log.debug("Probe %s:%d failed: %s", "https" if use_tls else "http", port, e)
            return False
    return True


async def discover(
    workspace_uri: str | None = None,
    *,
    cancel: asyncio.Event | None = None,
    command_timeout: float = 5.0,
    probe_timeout: float = 3.0,
) -> LanguageServerInfo | None:
    """Find the language server for *workspace_uri*; None when not found or unreachable."""
    if cancel is not None and cancel.is_set():
        return None
    ps_output = await _run(["ps", "-ax", "-o", "pid=,command="], command_timeout)
    if ps_output is None:
        return None

    line = pick_server_line(filter_server_lines(ps_output), workspace_uri)
    if line is None:
        log.debug("No language server process found")
        return None

    pid = extract_pid(line)
    csrf_token = extract_csrf_token(line)
    if not pid or not csrf_token:
        log.debug("Language server line missing pid or csrf token")
        return None

    if cancel is not None and cancel.is_set():
        return None
    lsof_output = await _run(
        ["lsof", "-nP", "-iTCP", "-sTCP:LISTEN", "-a", "-p", str(pid)], command_timeout,
    )
    if not lsof_output:
        return None
    ports = [p for p in (extract_port(row) for row in lsof_output.splitlines()) if p is not None]
    if not ports:
        log.debug("Language server pid %d has no loopback listening ports", pid)
        return None

    for port in ports:
        for use_tls in (True, False):
            if cancel is not None and cancel.is_set():
                return None
            if await probe_port(port, csrf_token, use_tls, timeout=probe_timeout, cancel=cancel):
                info = LanguageServerInfo(pid=pid, csrf_token=csrf_token, port=port, use_tls=use_tls)
                log.info("Language server found: pid=%d port=%d tls=%s", pid, port, use_tls)
                return info
    return None
