"""Model identifiers, context-window limits and display names."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

log = logging.getLogger(__name__)

DEFAULT_CONTEXT_LIMIT = 1_000_000

# Aliased model ids as reported by the language server's GetUserStatus API.
DEFAULT_CONTEXT_LIMITS: dict[str, int] = {
    "MODEL_PLACEHOLDER_M37": 1_000_000,  # Gemini 3.1 Pro (High)
    "MODEL_PLACEHOLDER_M36": 1_000_000,  # Gemini 3.1 Pro (Low)
    "MODEL_PLACEHOLDER_M18": 1_000_000,  # Gemini 3 Flash
    "MODEL_PLACEHOLDER_M35": 200_000,  # Claude Sonnet 4.6 (Thinking)
    "MODEL_PLACEHOLDER_M26": 200_000,  # Claude Opus 4.6 (Thinking)
    "MODEL_OPENAI_GPT_OSS_120B_MEDIUM": 128_000,
}

DEFAULT_DISPLAY_NAMES: dict[str, str] = {
    "MODEL_PLACEHOLDER_M37": "Gemini 3.1 Pro (High)",
    "MODEL_PLACEHOLDER_M36": "Gemini 3.1 Pro (Low)",
    "MODEL_PLACEHOLDER_M18": "Gemini 3 Flash",
    "MODEL_PLACEHOLDER_M35": "Claude Sonnet 4.6 (Thinking)",
    "MODEL_PLACEHOLDER_M26": "Claude Opus 4.6 (Thinking)",
    "MODEL_OPENAI_GPT_OSS_120B_MEDIUM": "GPT-OSS 120B (Medium)",
}

UNKNOWN_MODEL_NAME = "Unknown Model"


@dataclass
class ModelConfig:
    model: str
    label: str
    supports_images: bool = False


def context_limit(model: str, custom_limits: dict[str, int] | None = None) -> int:
    """User override (clamped to >= 1), then the static table, then the global default."""
    if custom_limits and model in custom_limits:
        return max(1, int(custom_limits[model]))
    return DEFAULT_CONTEXT_LIMITS.get(model) or DEFAULT_CONTEXT_LIMIT


def first_present(resolvers, *args) -> str:
    """Return the first non-empty value produced by *resolvers*, or ""."""
    for resolver in resolvers:
        value = resolver(*args)
        if value:
            return value
    return ""


# (detected_model, requested_model, generator_model) -> effective model
EFFECTIVE_MODEL_ORDER: tuple[Callable[[str, str, str], str], ...] = (
    lambda detected, requested, generator: detected,
    lambda detected, requested, generator: requested,
    lambda detected, requested, generator: generator,
)


def effective_model(detected: str, requested: str, generator: str) -> str:
    """Prefer the model seen in steps, then the summary's requested and generator models."""
    return first_present(EFFECTIVE_MODEL_ORDER, detected, requested, generator)


@dataclass
class ModelCatalog:
    """Display names for model ids.

    Starts from the built-in names; names fetched from the server are only
    added for ids that have none yet.
    """

    display_names: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_DISPLAY_NAMES))

    @property
    def display_name_order(self) -> tuple[Callable[[str], str], ...]:
        return (
            lambda model: self.display_names.get(model, ""),
            lambda model: model,
            lambda model: UNKNOWN_MODEL_NAME,
        )

    def display_name(self, model: str) -> str:
        return first_present(self.display_name_order, model)

    def update_display_names(self, configs: list[ModelConfig]) -> int:
        added = 0
        for c in configs:
            if c.model and c.label and c.model not in self.display_names:
                self.display_names[c.model] = c.label
                added += 1
        if added:
            log.debug("Added %d model display names from server", added)
        return added
