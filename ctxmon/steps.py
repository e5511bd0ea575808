"""Trajectory step schema and the step processor.

Steps arrive as loosely-typed JSON from the language server.  They are parsed
into the dataclasses below (every field optional, malformed values degrade to
defaults), then folded by :func:`process_steps` into a :class:`TokenUsageResult`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ctxmon.estimator import estimate_tokens

log = logging.getLogger(__name__)

STEP_USER_INPUT = "CORTEX_STEP_TYPE_USER_INPUT"
STEP_PLANNER_RESPONSE = "CORTEX_STEP_TYPE_PLANNER_RESPONSE"
STEP_CHECKPOINT = "CORTEX_STEP_TYPE_CHECKPOINT"

# System prompt + injected context, counted once per conversation.
SYSTEM_PROMPT_OVERHEAD = 10_000
# Fallbacks used only when the step payload object itself is missing.
USER_INPUT_OVERHEAD = 500
PLANNER_RESPONSE_ESTIMATE = 800
# Minimum inputTokens drop between consecutive checkpoints that counts as compression.
COMPRESSION_MIN_DROP = 5000

IMAGE_STEP_MARKERS = ("IMAGE", "GENERATE")
IMAGE_MODEL_MARKERS = ("nano", "banana", "image")


@dataclass
class ModelUsage:
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    response_output_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def has_usage(self) -> bool:
        return self.input_tokens > 0 or self.output_tokens > 0


@dataclass
class RetryInfo:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class StepMetadata:
    tool_call_output_tokens: int = 0
    generator_model: str = ""
    requested_model: str = ""
    model_usage: ModelUsage | None = None
    retry_infos: list[RetryInfo] = field(default_factory=list)


@dataclass
class UserInput:
    user_response: str = ""


@dataclass
class PlannerResponse:
    response: str = ""
    thinking: str = ""
    tool_call_arguments: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.response + self.thinking + "".join(self.tool_call_arguments)


@dataclass
class Step:
    type: str = ""
    user_input: UserInput | None = None
    planner_response: PlannerResponse | None = None
    metadata: StepMetadata | None = None

    @property
    def is_image_generation(self) -> bool:
        if any(marker in self.type for marker in IMAGE_STEP_MARKERS):
            return True
        if self.metadata and self.metadata.generator_model:
            lowered = self.metadata.generator_model.lower()
            return any(marker in lowered for marker in IMAGE_MODEL_MARKERS)
        return False


@dataclass
class StepTokenInfo:
    type: str
    tool_call_output_tokens: int
    model: str


@dataclass
class TokenUsageResult:
    context_used: int
    is_estimated: bool
    model: str = ""
    input_tokens: int = 0
    total_output_tokens: int = 0
    total_tool_call_output_tokens: int = 0
    last_model_usage: ModelUsage | None = None
    estimated_delta_since_checkpoint: int = 0
    image_gen_step_count: int = 0
    has_gaps: bool = False
    checkpoint_compression_detected: bool = False
    checkpoint_compression_drop: int = 0
    step_details: list[StepTokenInfo] = field(default_factory=list)


# -- Parsing --


def as_int(value: Any) -> int:
    """Coerce a JSON number or numeric string (int64 fields) to a non-negative int."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    if isinstance(value, str):
        try:
            return max(0, int(value.strip()))
        except ValueError:
            return 0
    return 0


def as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def as_dict(value: Any) -> dict | None:
    return value if isinstance(value, dict) else None


def as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _parse_model_usage(raw: dict | None) -> ModelUsage | None:
    if raw is None:
        return None
    return ModelUsage(
        model=as_str(raw.get("model")),
        input_tokens=as_int(raw.get("inputTokens")),
        output_tokens=as_int(raw.get("outputTokens")),
        response_output_tokens=as_int(raw.get("responseOutputTokens")),
        cache_read_tokens=as_int(raw.get("cacheReadTokens")),
    )


def _parse_retry_info(raw: Any) -> RetryInfo:
    raw = as_dict(raw) or {}
    usage = as_dict(raw.get("usage")) or {}
    return RetryInfo(
        input_tokens=as_int(usage.get("inputTokens")),
        output_tokens=as_int(usage.get("outputTokens")),
    )


def _parse_metadata(raw: dict | None) -> StepMetadata | None:
    if raw is None:
        return None
    requested = as_dict(raw.get("requestedModel")) or {}
    return StepMetadata(
        tool_call_output_tokens=as_int(raw.get("toolCallOutputTokens")),
        generator_model=as_str(raw.get("generatorModel")),
        requested_model=as_str(requested.get("model")),
        model_usage=_parse_model_usage(as_dict(raw.get("modelUsage"))),
        retry_infos=[_parse_retry_info(r) for r in as_list(raw.get("retryInfos"))],
    )


def _parse_user_input(raw: dict | None) -> UserInput | None:
    if raw is None:
        return None
    return UserInput(user_response=as_str(raw.get("userResponse")))


def _parse_planner_response(raw: dict | None) -> PlannerResponse | None:
    if raw is None:
        return None
    arguments = []
    for call in as_list(raw.get("toolCalls")):
        call = as_dict(call)
        if call is not None:
            arguments.append(as_str(call.get("argumentsJson")))
    return PlannerResponse(
        response=as_str(raw.get("response")),
        thinking=as_str(raw.get("thinking")),
        tool_call_arguments=arguments,
    )


def parse_step(raw: Any) -> Step:
    """Parse one raw step record.  Never raises; non-mappings become empty steps."""
    raw = as_dict(raw)
    if raw is None:
        return Step()
    return Step(
        type=as_str(raw.get("type")),
        user_input=_parse_user_input(as_dict(raw.get("userInput"))),
        planner_response=_parse_planner_response(as_dict(raw.get("plannerResponse"))),
        metadata=_parse_metadata(as_dict(raw.get("metadata"))),
    )


def parse_steps(raw_steps: Any) -> list[Step]:
    return [parse_step(s) for s in as_list(raw_steps)]


# -- Processing --


def _log_retry_infos(meta: StepMetadata, usage: ModelUsage) -> None:
    """Observation only: retry usage is never added to totals."""
    if not meta.retry_infos:
        return
    log.debug(
        "Checkpoint retryInfos: %d retries, retryInput=%d retryOutput=%d, mainInput=%d mainOutput=%d",
        len(meta.retry_infos),
        sum(r.input_tokens for r in meta.retry_infos),
        sum(r.output_tokens for r in meta.retry_infos),
        usage.input_tokens,
        usage.output_tokens,
    )


def process_steps(steps: list[Step]) -> TokenUsageResult:
    """Fold an ordered step list (oldest first) into a usage estimate.

    The last checkpoint with non-zero usage anchors the result; anything after
    it is added as an estimated delta.  With no usable checkpoint the whole
    context is estimated from tool output, step text and the system prompt
    overhead.  ``has_gaps`` is left False for the caller to set.
    """
    tool_output_tokens = 0
    estimation_overhead = 0
    output_tokens_since_checkpoint = 0
    model = ""
    last_model_usage: ModelUsage | None = None
    step_details: list[StepTokenInfo] = []
    image_gen_indices: set[int] = set()

    prev_checkpoint_input = -1  # -1 = no checkpoint yet
    compression_detected = False
    compression_drop = 0

    for index, step in enumerate(steps):
        meta = step.metadata

        if step.type == STEP_USER_INPUT:
            if step.user_input is None:
                estimation_overhead += USER_INPUT_OVERHEAD
            else:
                estimation_overhead += estimate_tokens(step.user_input.user_response)

        elif step.type == STEP_PLANNER_RESPONSE:
            if step.planner_response is None:
                estimation_overhead += PLANNER_RESPONSE_ESTIMATE
            else:
                estimation_overhead += estimate_tokens(step.planner_response.text)

        if step.is_image_generation:
            image_gen_indices.add(index)

        if step.type == STEP_CHECKPOINT and meta and meta.model_usage:
            usage = meta.model_usage
            _log_retry_infos(meta, usage)
            if usage.has_usage:
                # Checkpoints are never rewritten, so a drop here is real compression.
                if prev_checkpoint_input > 0 and usage.input_tokens < prev_checkpoint_input:
                    drop = prev_checkpoint_input - usage.input_tokens
                    if drop > COMPRESSION_MIN_DROP:
                        compression_detected = True
                        compression_drop = drop
                prev_checkpoint_input = usage.input_tokens
                last_model_usage = usage
                estimation_overhead = 0
                output_tokens_since_checkpoint = 0

        if meta is None:
            continue

        if meta.tool_call_output_tokens > 0:
            tool_output_tokens += meta.tool_call_output_tokens
            output_tokens_since_checkpoint += meta.tool_call_output_tokens
            step_details.append(StepTokenInfo(
                type=step.type,
                tool_call_output_tokens=meta.tool_call_output_tokens,
                model=meta.generator_model,
            ))

        # Priority, lowest to highest: generator model, checkpoint model, requested model.
        if meta.generator_model:
            model = meta.generator_model
        if last_model_usage and last_model_usage.model:
            model = last_model_usage.model
        if meta.requested_model:
            model = meta.requested_model

    estimated_delta = output_tokens_since_checkpoint + estimation_overhead

    if last_model_usage and last_model_usage.input_tokens > 0:
        return TokenUsageResult(
            context_used=last_model_usage.input_tokens + last_model_usage.output_tokens + estimated_delta,
            is_estimated=estimated_delta > 0,
            model=model,
            input_tokens=last_model_usage.input_tokens,
            total_output_tokens=last_model_usage.output_tokens,
            total_tool_call_output_tokens=tool_output_tokens,
            last_model_usage=last_model_usage,
            estimated_delta_since_checkpoint=estimated_delta,
            image_gen_step_count=len(image_gen_indices),
            checkpoint_compression_detected=compression_detected,
            checkpoint_compression_drop=compression_drop,
            step_details=step_details,
        )

    estimated_total = tool_output_tokens + SYSTEM_PROMPT_OVERHEAD + estimation_overhead
    return TokenUsageResult(
        context_used=estimated_total,
        is_estimated=True,
        model=model,
        total_tool_call_output_tokens=tool_output_tokens,
        last_model_usage=None,
        estimated_delta_since_checkpoint=estimated_total,
        image_gen_step_count=len(image_gen_indices),
        step_details=step_details,
    )
