"""Conversation listing, batched step fetching, and per-conversation usage."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from ctxmon.models import ModelCatalog, ModelConfig, context_limit, effective_model
from ctxmon.rpc import RpcCancelledError, RpcError, metadata_payload
from ctxmon.steps import (
    ModelUsage,
    TokenUsageResult,
    as_dict,
    as_int,
    as_list,
    as_str,
    parse_steps,
    process_steps,
)

log = logging.getLogger(__name__)

STATUS_RUNNING = "CASCADE_RUN_STATUS_RUNNING"

BATCH_SIZE = 50
MAX_CONCURRENT_BATCHES = 5
LIST_TIMEOUT = 10.0
STEPS_TIMEOUT = 30.0


class RpcCaller(Protocol):
    async def call(self, endpoint: str, payload: dict[str, Any], timeout: float = ...) -> dict[str, Any]: ...


@dataclass
class TrajectorySummary:
    cascade_id: str
    summary: str
    step_count: int = 0
    status: str = "unknown"
    last_modified_time: str = ""
    created_time: str = ""
    requested_model: str = ""
    generator_model: str = ""
    trajectory_id: str = ""
    workspace_uris: tuple[str, ...] = ()

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING


@dataclass
class ContextUsage:
    cascade_id: str
    title: str
    model: str
    model_display_name: str
    context_used: int
    total_output_tokens: int
    total_tool_call_output_tokens: int
    context_limit: int
    usage_percent: float  # uncapped; > 100 means the server is about to compress
    step_count: int
    last_modified_time: str
    status: str
    is_estimated: bool
    last_model_usage: ModelUsage | None
    estimated_delta_since_checkpoint: int
    image_gen_step_count: int
    compression_detected: bool
    checkpoint_compression_drop: int
    has_gaps: bool
    previous_context_used: int | None = None


# -- Conversation listing --


def _parse_summary(cascade_id: str, data: dict) -> TrajectorySummary:
    requested = ""
    generator = ""
    # The later of the two boundary steps wins.
    for key in ("latestTaskBoundaryStep", "latestNotifyUserStep"):
        step = as_dict((as_dict(data.get(key)) or {}).get("step")) or {}
        meta = as_dict(step.get("metadata"))
        if meta is None:
            continue
        if as_str(meta.get("generatorModel")):
            generator = meta["generatorModel"]
        rm = as_str((as_dict(meta.get("requestedModel")) or {}).get("model"))
        if rm:
            requested = rm

    uris = []
    for ws in as_list(data.get("workspaces")):
        uri = as_str((as_dict(ws) or {}).get("workspaceFolderAbsoluteUri"))
        if uri:
            uris.append(uri)

    return TrajectorySummary(
        cascade_id=cascade_id,
        trajectory_id=as_str(data.get("trajectoryId")),
        summary=as_str(data.get("summary")) or cascade_id,
        step_count=as_int(data.get("stepCount")),
        status=as_str(data.get("status")) or "unknown",
        last_modified_time=as_str(data.get("lastModifiedTime")),
        created_time=as_str(data.get("createdTime")),
        requested_model=requested or generator,
        generator_model=generator,
        workspace_uris=tuple(uris),
    )


def parse_trajectory_summaries(resp: dict[str, Any]) -> list[TrajectorySummary]:
    """Parse a GetAllCascadeTrajectories response, most recently modified first.

    Conversations without a timestamp sort last.
    """
    summaries = as_dict(resp.get("trajectorySummaries")) or {}
    result = [
        _parse_summary(cascade_id, data)
        for cascade_id, data in summaries.items()
        if isinstance(data, dict)
    ]
    stamped = sorted((t for t in result if t.last_modified_time),
                     key=lambda t: t.last_modified_time, reverse=True)
    return stamped + [t for t in result if not t.last_modified_time]


async def get_all_trajectories(client: RpcCaller, timeout: float = LIST_TIMEOUT) -> list[TrajectorySummary]:
    resp = await client.call("GetAllCascadeTrajectories", metadata_payload(), timeout=timeout)
    return parse_trajectory_summaries(resp)


# -- Step fetching --


def batch_ranges(total_steps: int, batch_size: int = BATCH_SIZE) -> list[tuple[int, int]]:
    """Half-open [start, end) ranges covering [0, total_steps).

    The step query wraps around past the real end and returns duplicates, so
    no range may extend beyond *total_steps*.
    """
    total = max(total_steps, 0)
    return [(start, min(start + batch_size, total)) for start in range(0, total, batch_size)]


async def get_trajectory_token_usage(
    client: RpcCaller,
    cascade_id: str,
    total_steps: int,
    *,
    batch_size: int = BATCH_SIZE,
    max_concurrent: int = MAX_CONCURRENT_BATCHES,
    timeout: float = STEPS_TIMEOUT,
) -> TokenUsageResult:
    """Fetch every step in bounded groups of parallel batches and process them.

    A failed batch is skipped and marks the result ``has_gaps``.
    """
    ranges = batch_ranges(total_steps, batch_size)
    raw_steps: list[Any] = []
    has_gaps = False

    for group_start in range(0, len(ranges), max_concurrent):
        group = ranges[group_start:group_start + max_concurrent]
        results = await asyncio.gather(
            *(
                client.call(
                    "GetCascadeTrajectorySteps",
                    {"cascadeId": cascade_id, "startIndex": start, "endIndex": end},
                    timeout=timeout,
                )
                for start, end in group
            ),
            return_exceptions=True,
        )
        for (start, end), result in zip(group, results):
            if isinstance(result, (asyncio.CancelledError, RpcCancelledError)):
                raise result
            if isinstance(result, BaseException):
                log.warning(
                    "Failed to fetch steps [%d-%d] for cascade %s: %s",
                    start, end, cascade_id[:8], result,
                )
                has_gaps = True
                continue
            raw_steps.extend(as_list(result.get("steps")))

    usage = process_steps(parse_steps(raw_steps))
    usage.has_gaps = has_gaps
    return usage


# -- Per-conversation usage --


async def get_context_usage(
    client: RpcCaller,
    trajectory: TrajectorySummary,
    catalog: ModelCatalog,
    custom_limits: dict[str, int] | None = None,
    *,
    steps_timeout: float = STEPS_TIMEOUT,
) -> ContextUsage:
    result = await get_trajectory_token_usage(
        client, trajectory.cascade_id, trajectory.step_count, timeout=steps_timeout,
    )
    model = effective_model(result.model, trajectory.requested_model, trajectory.generator_model)
    limit = context_limit(model, custom_limits)

    return ContextUsage(
        cascade_id=trajectory.cascade_id,
        title=trajectory.summary,
        model=model,
        model_display_name=catalog.display_name(model),
        context_used=result.context_used,
        total_output_tokens=result.total_output_tokens,
        total_tool_call_output_tokens=result.total_tool_call_output_tokens,
        context_limit=limit,
        usage_percent=result.context_used / limit * 100,
        step_count=trajectory.step_count,
        last_modified_time=trajectory.last_modified_time,
        status=trajectory.status,
        is_estimated=result.is_estimated,
        last_model_usage=result.last_model_usage,
        estimated_delta_since_checkpoint=result.estimated_delta_since_checkpoint,
        image_gen_step_count=result.image_gen_step_count,
        compression_detected=result.checkpoint_compression_detected,
        checkpoint_compression_drop=result.checkpoint_compression_drop,
        has_gaps=result.has_gaps,
    )


# -- Model metadata --


def parse_model_configs(resp: dict[str, Any]) -> list[ModelConfig]:
    user_status = as_dict(resp.get("userStatus")) or {}
    config_data = as_dict(user_status.get("cascadeModelConfigData")) or {}
    configs = []
    for raw in as_list(config_data.get("clientModelConfigs")):
        raw = as_dict(raw) or {}
        model = as_str((as_dict(raw.get("modelOrAlias")) or {}).get("model"))
        label = as_str(raw.get("label"))
        if model and label:
            configs.append(ModelConfig(
                model=model,
                label=label,
                supports_images=raw.get("supportsImages") is True,
            ))
    return configs


async def fetch_model_configs(client: RpcCaller, timeout: float = LIST_TIMEOUT) -> list[ModelConfig]:
    """Best effort: any failure yields an empty list."""
    try:
        resp = await client.call("GetUserStatus", metadata_payload(), timeout=timeout)
    except RpcError as e:
        log.debug("GetUserStatus failed: %s", e)
        return []
    return parse_model_configs(resp)
