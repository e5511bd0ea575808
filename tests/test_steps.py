"""Tests for step parsing and the step processor."""

from ctxmon.steps import (
    COMPRESSION_MIN_DROP,
    PLANNER_RESPONSE_ESTIMATE,
    STEP_CHECKPOINT,
    STEP_PLANNER_RESPONSE,
    STEP_USER_INPUT,
    SYSTEM_PROMPT_OVERHEAD,
    USER_INPUT_OVERHEAD,
    as_int,
    parse_step,
    parse_steps,
    process_steps,
)


def _user(text=None, **meta):
    raw = {"type": STEP_USER_INPUT}
    if text is not None:
        raw["userInput"] = {"userResponse": text}
    if meta:
        raw["metadata"] = meta
    return raw


def _planner(response=None, thinking="", tool_args=(), **meta):
    raw = {"type": STEP_PLANNER_RESPONSE}
    if response is not None:
        raw["plannerResponse"] = {
            "response": response,
            "thinking": thinking,
            "toolCalls": [{"argumentsJson": a} for a in tool_args],
        }
    if meta:
        raw["metadata"] = meta
    return raw


def _checkpoint(input_tokens, output_tokens, model="", **meta):
    meta["modelUsage"] = {
        "model": model,
        "inputTokens": str(input_tokens),
        "outputTokens": str(output_tokens),
    }
    return {"type": STEP_CHECKPOINT, "metadata": meta}


def _process(*raw):
    return process_steps(parse_steps(list(raw)))


class TestParsing:

    def test_as_int_accepts_numeric_strings(self):
        assert as_int("1234") == 1234
        assert as_int(12.9) == 12
        assert as_int(-5) == 0
        assert as_int("abc") == 0
        assert as_int(None) == 0
        assert as_int(True) == 0

    def test_non_mapping_step_becomes_empty(self):
        step = parse_step("garbage")
        assert step.type == ""
        assert step.metadata is None

    def test_planner_text_joins_response_thinking_and_tool_args(self):
        step = parse_step(_planner("a", thinking="b", tool_args=["c", "d"]))
        assert step.planner_response.text == "abcd"

    def test_requested_model_read_from_nested_object(self):
        step = parse_step({"type": "X", "metadata": {"requestedModel": {"model": "M1"}}})
        assert step.metadata.requested_model == "M1"

    def test_malformed_fields_degrade(self):
        step = parse_step({
            "type": 7,
            "metadata": {"toolCallOutputTokens": "lots", "modelUsage": "nope", "retryInfos": "x"},
        })
        assert step.type == ""
        assert step.metadata.tool_call_output_tokens == 0
        assert step.metadata.model_usage is None
        assert step.metadata.retry_infos == []

    def test_parse_steps_non_list(self):
        assert parse_steps(None) == []


class TestEstimatedPath:

    def test_empty_conversation_is_system_overhead(self):
        result = _process()
        assert result.context_used == SYSTEM_PROMPT_OVERHEAD
        assert result.is_estimated is True
        assert result.estimated_delta_since_checkpoint == SYSTEM_PROMPT_OVERHEAD
        assert result.last_model_usage is None

    def test_text_and_tool_output_are_estimated(self):
        result = _process(
            _user("hello"),  # 2
            _planner("okay", toolCallOutputTokens=300),  # 1 + 300 tool output
        )
        assert result.context_used == SYSTEM_PROMPT_OVERHEAD + 2 + 1 + 300
        assert result.total_tool_call_output_tokens == 300

    def test_missing_payloads_use_fallbacks(self):
        result = _process(_user(), _planner())
        assert result.context_used == SYSTEM_PROMPT_OVERHEAD + USER_INPUT_OVERHEAD + PLANNER_RESPONSE_ESTIMATE

    def test_empty_text_is_not_fallback(self):
        result = _process(_user(""), _planner(""))
        assert result.context_used == SYSTEM_PROMPT_OVERHEAD


class TestCheckpointAnchoring:

    def test_checkpoint_anchors_and_resets_overhead(self):
        result = _process(
            _user("hello"),
            _checkpoint(500, 20),
            _planner("ok"),
        )
        assert result.context_used == 521
        assert result.is_estimated is True
        assert result.input_tokens == 500
        assert result.total_output_tokens == 20
        assert result.estimated_delta_since_checkpoint == 1

    def test_checkpoint_last_step_is_precise(self):
        result = _process(_user("hello"), _checkpoint(1000, 50))
        assert result.context_used == 1050
        assert result.is_estimated is False
        assert result.estimated_delta_since_checkpoint == 0

    def test_tool_output_after_checkpoint_counts_toward_delta(self):
        result = _process(
            _checkpoint(1000, 50),
            _planner("", toolCallOutputTokens=200),
        )
        assert result.context_used == 1250
        assert result.total_tool_call_output_tokens == 200

    def test_tool_output_before_checkpoint_not_double_counted(self):
        result = _process(
            _planner("", toolCallOutputTokens=200),
            _checkpoint(1000, 50),
        )
        assert result.context_used == 1050
        assert result.total_tool_call_output_tokens == 200

    def test_zero_usage_checkpoint_ignored(self):
        result = _process(_user("hello"), _checkpoint(0, 0))
        assert result.last_model_usage is None
        assert result.context_used == SYSTEM_PROMPT_OVERHEAD + 2

    def test_output_only_checkpoint_falls_back_to_estimate(self):
        result = _process(_checkpoint(0, 40))
        assert result.last_model_usage is None
        assert result.is_estimated is True

    def test_retry_infos_never_added(self):
        step = _checkpoint(1000, 50)
        step["metadata"]["retryInfos"] = [{"usage": {"inputTokens": "9999", "outputTokens": "99"}}]
        result = _process(step)
        assert result.context_used == 1050


class TestCompressionDetection:

    def test_large_input_drop_between_checkpoints(self):
        result = _process(_checkpoint(150_000, 100), _checkpoint(40_000, 100))
        assert result.checkpoint_compression_detected is True
        assert result.checkpoint_compression_drop == 110_000

    def test_small_drop_ignored(self):
        result = _process(
            _checkpoint(50_000, 100),
            _checkpoint(50_000 - COMPRESSION_MIN_DROP, 100),
        )
        assert result.checkpoint_compression_detected is False
        assert result.checkpoint_compression_drop == 0

    def test_growth_is_not_compression(self):
        result = _process(_checkpoint(10_000, 100), _checkpoint(90_000, 100))
        assert result.checkpoint_compression_detected is False


class TestModelAndImages:

    def test_requested_model_beats_checkpoint_and_generator(self):
        result = _process(
            _planner("x", generatorModel="GEN"),
            _checkpoint(100, 10, model="CKPT"),
            _planner("y", generatorModel="GEN", requestedModel={"model": "REQ"}),
        )
        assert result.model == "REQ"

    def test_checkpoint_model_beats_generator(self):
        result = _process(
            _checkpoint(100, 10, model="CKPT"),
            _planner("y", generatorModel="GEN"),
        )
        assert result.model == "CKPT"

    def test_generator_model_alone(self):
        result = _process(_planner("y", generatorModel="GEN"))
        assert result.model == "GEN"

    def test_image_steps_counted_once_each(self):
        result = _process(
            {"type": "CORTEX_STEP_TYPE_GENERATE_IMAGE", "metadata": {"generatorModel": "nano-banana"}},
            _planner("x", generatorModel="imagen-banana"),
            _planner("y", generatorModel="MODEL_PLACEHOLDER_M18"),
        )
        assert result.image_gen_step_count == 2

    def test_step_details_only_for_positive_tool_output(self):
        result = _process(
            _planner("a", toolCallOutputTokens=10, generatorModel="G"),
            _planner("b"),
        )
        assert len(result.step_details) == 1
        assert result.step_details[0].tool_call_output_tokens == 10
        assert result.step_details[0].model == "G"
