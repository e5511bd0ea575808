"""ctxmon: context-window usage monitor for Antigravity conversations."""

__version__ = "0.1.0"
