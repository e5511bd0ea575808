"""Tests for context limits, model resolution and the display-name catalog."""

from ctxmon.models import (
    DEFAULT_CONTEXT_LIMIT,
    UNKNOWN_MODEL_NAME,
    ModelCatalog,
    ModelConfig,
    context_limit,
    effective_model,
)


class TestContextLimit:

    def test_static_table(self):
        assert context_limit("MODEL_PLACEHOLDER_M35") == 200_000
        assert context_limit("MODEL_PLACEHOLDER_M37") == 1_000_000
        assert context_limit("MODEL_OPENAI_GPT_OSS_120B_MEDIUM") == 128_000

    def test_unknown_model_uses_default(self):
        assert context_limit("MODEL_NEW") == DEFAULT_CONTEXT_LIMIT
        assert context_limit("") == DEFAULT_CONTEXT_LIMIT

    def test_custom_override_wins(self):
        assert context_limit("MODEL_PLACEHOLDER_M35", {"MODEL_PLACEHOLDER_M35": 150_000}) == 150_000

    def test_custom_override_clamped(self):
        assert context_limit("M", {"M": 0}) == 1
        assert context_limit("M", {"M": -10}) == 1


class TestEffectiveModel:

    def test_priority(self):
        assert effective_model("A", "B", "C") == "A"
        assert effective_model("", "B", "C") == "B"
        assert effective_model("", "", "C") == "C"
        assert effective_model("", "", "") == ""


class TestModelCatalog:

    def test_fallback_chain(self):
        catalog = ModelCatalog()
        assert catalog.display_name("MODEL_PLACEHOLDER_M18") == "Gemini 3 Flash"
        assert catalog.display_name("MODEL_RAW") == "MODEL_RAW"
        assert catalog.display_name("") == UNKNOWN_MODEL_NAME

    def test_update_only_adds_new_ids(self):
        catalog = ModelCatalog()
        added = catalog.update_display_names([
            ModelConfig(model="MODEL_PLACEHOLDER_M18", label="Renamed"),
            ModelConfig(model="MODEL_NEW", label="Brand New"),
        ])
        assert added == 1
        assert catalog.display_name("MODEL_PLACEHOLDER_M18") == "Gemini 3 Flash"
        assert catalog.display_name("MODEL_NEW") == "Brand New"

    def test_catalogs_are_independent(self):
        a = ModelCatalog()
        a.update_display_names([ModelConfig(model="X", label="Ex")])
        assert ModelCatalog().display_name("X") == "X"
