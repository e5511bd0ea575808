"""Monitor engine: the poll cycle and its session context."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ctxmon.config import Config
from ctxmon.discovery import discover as discover_language_server
from ctxmon.models import ModelCatalog, context_limit
from ctxmon.persistence import (
    NO_WORKSPACE_KEY,
    WorkspaceState,
    load_workspace_state,
    save_workspace_state,
)
from ctxmon.rpc import LanguageServerInfo, RpcCancelledError, RpcClient, RpcError
from ctxmon.scheduler import BackoffPolicy, PollScheduler
from ctxmon.selection import SelectionState, select_cascade, track_compression, update_baselines
from ctxmon.states import Event, State, transition
from ctxmon.tracker import (
    ContextUsage,
    TrajectorySummary,
    fetch_model_configs,
    get_all_trajectories,
    get_context_usage,
)

log = logging.getLogger(__name__)

DiscoverFn = Callable[..., Awaitable[LanguageServerInfo | None]]


@dataclass
class MonitorSnapshot:
    """What the presentation sink receives after every poll."""

    state: State
    current: ContextUsage | None = None
    recent: list[ContextUsage] = field(default_factory=list)
    idle_model: str = ""
    idle_context_limit: int = 0
    reason: str = ""


@dataclass
class MonitorContext:
    """Mutable session state owned by the engine and carried across polls."""

    config: Config
    catalog: ModelCatalog
    workspace_uri: str | None
    selection: SelectionState = field(default_factory=SelectionState)
    ls: LanguageServerInfo | None = None
    client: Any = None  # RpcClient bound to ``ls``
    state: State = State.INITIALIZING
    current: ContextUsage | None = None
    recent: list[ContextUsage] = field(default_factory=list)
    last_error: str = ""
    cancel: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def workspace_key(self) -> str:
        return self.workspace_uri or NO_WORKSPACE_KEY


class MonitorEngine:
    """Drives discovery, listing, selection and usage once per poll."""

    def __init__(
        self,
        config: Config,
        *,
        discover: DiscoverFn | None = None,
        client_factory: Callable[[LanguageServerInfo], Any] | None = None,
        sink: Callable[[MonitorSnapshot], None] | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        self.ctx = MonitorContext(
            config=config,
            catalog=catalog or ModelCatalog(),
            workspace_uri=config.workspace_uri,
        )
        self._discover = discover or discover_language_server
        self._client_factory = client_factory or self._default_client
        self._sink = sink
        self.scheduler: PollScheduler | None = None

        saved = load_workspace_state(self.ctx.workspace_key, config.state_path)
        self.ctx.selection.last_known_model = saved.last_known_model

    def _default_client(self, ls: LanguageServerInfo) -> RpcClient:
        return RpcClient(ls, cancel=self.ctx.cancel, max_response_bytes=self.ctx.config.max_response_bytes)

    # -- Lifecycle --

    async def run(self) -> None:
        """Poll on the configured interval until :meth:`shutdown`."""
        self.scheduler = PollScheduler(
            self.poll, BackoffPolicy(base_interval=self.ctx.config.polling_interval),
        )
        self.scheduler.start()
        try:
            await self.ctx.cancel.wait()
        finally:
            await self.scheduler.stop()
            await self.invalidate()

    async def shutdown(self) -> None:
        self.ctx.cancel.set()
        if self.scheduler is not None:
            await self.scheduler.stop()

    async def refresh(self) -> None:
        """Forget the cached endpoint, reset backoff and poll immediately."""
        log.info("Manual refresh")
        await self.invalidate()
        if self.scheduler is not None:
            self.scheduler.policy.reset()
            self.scheduler.run_now()

    def set_interval(self, seconds: float) -> None:
        self.ctx.config.polling_interval = max(1, int(seconds))
        if self.scheduler is not None:
            self.scheduler.set_base_interval(self.ctx.config.polling_interval)

    async def invalidate(self) -> None:
        """Drop the cached language server and its client."""
        client, self.ctx.client, self.ctx.ls = self.ctx.client, None, None
        if client is not None:
            await client.aclose()

    # -- Poll cycle --

    async def poll(self) -> bool:
        """Run one cycle; True on success.  A cancelled RPC counts as a failed cycle."""
        try:
            return await self._poll()
        except RpcCancelledError:
            log.debug("Poll cancelled")
            return False

    async def _poll(self) -> bool:
        ctx = self.ctx
        if ctx.client is None and not await self._connect():
            return False

        try:
            trajectories = await get_all_trajectories(ctx.client, ctx.config.rpc_timeout)
        except RpcCancelledError:
            raise
        except RpcError as e:
            log.warning("Listing conversations failed, rediscovering: %s", e)
            await self.invalidate()
            if not await self._connect():
                return False
            try:
                trajectories = await get_all_trajectories(ctx.client, ctx.config.rpc_timeout)
            except RpcCancelledError:
                raise
            except RpcError as e2:
                log.warning("Listing conversations failed again: %s", e2)
                await self.invalidate()
                self._disconnected(str(e2))
                return False

        selection = select_cascade(trajectories, ctx.workspace_uri, ctx.selection)

        current = None
        if selection.trajectory is not None:
            current = await get_context_usage(
                ctx.client, selection.trajectory, ctx.catalog, ctx.config.context_limits,
                steps_timeout=ctx.config.steps_timeout,
            )
            self._remember_model(current.model)
            track_compression(current, ctx.selection)
            log.info(
                "%s: %d / %d tokens (%.1f%%)%s%s",
                current.cascade_id[:8], current.context_used, current.context_limit,
                current.usage_percent,
                " estimated" if current.is_estimated else "",
                " gaps" if current.has_gaps else "",
            )

        if current is not None:
            recent_pool = selection.qualified or trajectories
            ctx.recent = await self._recent_usages(recent_pool[:ctx.config.recent_limit], current)
        else:
            ctx.recent = []
        ctx.current = current

        update_baselines(ctx.selection, trajectories)

        if current is not None:
            self._emit(Event.CASCADE_SELECTED)
            reason = selection.reason
        elif trajectories:
            self._emit(Event.NONE_SELECTED)
            reason = "no active conversation"
        else:
            self._emit(Event.LIST_EMPTY)
            reason = "no conversations"
        self._publish(reason)
        return True

    async def _connect(self) -> bool:
        ctx = self.ctx
        if ctx.state != State.INITIALIZING:
            self._emit(Event.CONNECTING)

        ls = await self._discover(
            ctx.workspace_uri,
            cancel=ctx.cancel,
            command_timeout=ctx.config.discovery_timeout,
            probe_timeout=ctx.config.probe_timeout,
        )
        if ls is None:
            self._disconnected("language server not found")
            return False

        ctx.ls = ls
        ctx.client = self._client_factory(ls)
        ctx.last_error = ""

        configs = await fetch_model_configs(ctx.client, ctx.config.rpc_timeout)
        added = ctx.catalog.update_display_names(configs)
        if added:
            log.debug("Learned %d model display names", added)
        return True

    async def _recent_usages(
        self, trajectories: list[TrajectorySummary], current: ContextUsage | None,
    ) -> list[ContextUsage]:
        ctx = self.ctx

        async def usage_for(t: TrajectorySummary) -> ContextUsage:
            if current is not None and t.cascade_id == current.cascade_id:
                return current
            return await get_context_usage(
                ctx.client, t, ctx.catalog, ctx.config.context_limits,
                steps_timeout=ctx.config.steps_timeout,
            )

        results = await asyncio.gather(*(usage_for(t) for t in trajectories), return_exceptions=True)
        recent = []
        for t, result in zip(trajectories, results):
            if isinstance(result, (asyncio.CancelledError, RpcCancelledError)):
                raise result
            if isinstance(result, BaseException):
                log.warning("Usage for recent conversation %s failed: %s", t.cascade_id[:8], result)
                continue
            recent.append(result)
        return recent

    # -- Helpers --

    def _emit(self, event: Event) -> None:
        """Transition to the next state via the given event."""
        old = self.ctx.state
        self.ctx.state = transition(old, event)
        if old != self.ctx.state:
            log.info("Transition: %s + %s -> %s", old.name, event.name, self.ctx.state.name)

    def _disconnected(self, reason: str) -> None:
        self.ctx.last_error = reason
        self.ctx.current = None
        self.ctx.recent = []
        self._emit(Event.CONNECTION_FAILED)
        self._publish(reason)

    def _remember_model(self, model: str) -> None:
        selection = self.ctx.selection
        if not model or model == selection.last_known_model:
            return
        selection.last_known_model = model
        try:
            save_workspace_state(
                WorkspaceState(workspace_key=self.ctx.workspace_key, last_known_model=model),
                self.ctx.config.state_path,
            )
        except OSError as e:
            log.warning("Failed to persist last known model: %s", e)

    def snapshot(self, reason: str = "") -> MonitorSnapshot:
        ctx = self.ctx
        idle_model = ctx.selection.last_known_model
        return MonitorSnapshot(
            state=ctx.state,
            current=ctx.current,
            recent=list(ctx.recent),
            idle_model=idle_model,
            idle_context_limit=context_limit(idle_model, ctx.config.context_limits),
            reason=reason,
        )

    def _publish(self, reason: str) -> None:
        if self._sink is not None:
            self._sink(self.snapshot(reason))
